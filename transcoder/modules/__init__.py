"""Engine modules.

- media: Container identification and stream probing
- planning: Target format profiles and pipeline planning
- transcoding: Pipeline execution on top of ffmpeg
- job: Job model, store, scheduler and HTTP API
"""
