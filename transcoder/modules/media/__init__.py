"""Media probing module.

Identifies source containers from their signature, validates headers and
enumerates audio, video and subtitle streams via ffprobe.
"""
