"""ffprobe stream inspection."""

import json
import subprocess
from pathlib import Path
from typing import Optional

from transcoder.core.errors import CorruptHeader, StageFailure

STDERR_TAIL_CHARS = 500


class FFprobe:
    """Thin wrapper around the ffprobe binary."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: Optional[float] = 60.0):
        """Initialize the wrapper.

        Args:
            ffprobe_path: Path to ffprobe binary
            timeout: Seconds to wait for ffprobe before giving up
        """
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def build_command(self, path: Path) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]

    def inspect(self, path: Path) -> dict:
        """Get container and stream information for *path*.

        Args:
            path: Media file to inspect

        Returns:
            ffprobe's JSON output as a dict with "format" and "streams" keys

        Raises:
            CorruptHeader: ffprobe could not parse the file
            StageFailure: ffprobe could not be run
        """
        try:
            result = subprocess.run(
                self.build_command(path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise StageFailure("probe", e) from e

        if result.returncode != 0:
            stderr = result.stderr.strip()[-STDERR_TAIL_CHARS:]
            raise CorruptHeader(f"ffprobe could not read {path.name}: {stderr or 'no output'}")

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise CorruptHeader(f"ffprobe returned malformed output for {path.name}") from e

        if not isinstance(data, dict):
            raise CorruptHeader(f"ffprobe returned unexpected output for {path.name}")
        return data
