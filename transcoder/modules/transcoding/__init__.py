"""Transcoding module.

Executes pipeline plans: a demux thread feeds a bounded stage buffer, the
encode stage drains it into an ffmpeg codec handle writing the output.
"""
