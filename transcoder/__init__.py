"""Video Transcoder Engine.

Accepts conversion jobs for video files, runs each one as a staged
demux/decode/filter/encode/mux pipeline on a bounded pool of workers and
exposes their progress and outcome.

Modules:
    - core: Configuration, logging, errors, metrics, database
    - modules.media: Container identification and stream probing
    - modules.planning: Pipeline planning
    - modules.transcoding: Pipeline execution
    - modules.job: Jobs, store, scheduler and HTTP API
"""

__version__ = "0.1.0"
