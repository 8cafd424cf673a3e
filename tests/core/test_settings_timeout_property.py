"""Property-based tests for engine settings.

**Feature: video-transcoder, Property 13: Job Time Limits**
"""

import pytest
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from transcoder.core.config import MIB, Settings


class TestEstimateTimeout:
    """Tests for per-job time limits."""

    @given(size=st.integers(min_value=0, max_value=64 * 1024 * MIB))
    @settings(max_examples=100)
    def test_timeout_grows_with_source_size(self, size: int) -> None:
        """**Feature: video-transcoder, Property 13: Job Time Limits**

        For any source size, the time limit SHALL be at least the minimum and
        SHALL never shrink as the source grows.
        """
        config = Settings()
        limit = config.estimate_timeout(size)

        assert limit >= config.MIN_JOB_TIMEOUT_SECONDS
        assert config.estimate_timeout(size + MIB) >= limit

    def test_small_sources_get_the_minimum(self) -> None:
        config = Settings(MIN_JOB_TIMEOUT_SECONDS=60.0)
        assert config.estimate_timeout(0) == 60.0
        assert config.estimate_timeout(10 * MIB) == 60.0

    def test_large_sources_scale_with_multiplier(self) -> None:
        config = Settings(
            ESTIMATED_THROUGHPUT_BYTES_PER_SECOND=MIB,
            TIMEOUT_MULTIPLIER=3.0,
            MIN_JOB_TIMEOUT_SECONDS=1.0,
        )
        assert config.estimate_timeout(100 * MIB) == 300.0

    def test_explicit_timeout_wins(self) -> None:
        config = Settings(JOB_TIMEOUT_SECONDS=5.0)
        assert config.estimate_timeout(0) == 5.0
        assert config.estimate_timeout(100_000 * MIB) == 5.0


class TestValidation:
    """Tests for rejected configuration values."""

    def test_store_backend_is_normalized(self) -> None:
        assert Settings(JOB_STORE_BACKEND="SQL").JOB_STORE_BACKEND == "sql"

    def test_unknown_store_backend(self) -> None:
        with pytest.raises(ValidationError):
            Settings(JOB_STORE_BACKEND="redis")

    def test_log_level_is_normalized(self) -> None:
        assert Settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    def test_unknown_log_level(self) -> None:
        with pytest.raises(ValidationError):
            Settings(LOG_LEVEL="chatty")

    @pytest.mark.parametrize(
        "field,value",
        [
            ("MAX_CONCURRENT_JOBS", 0),
            ("READ_CHUNK_SIZE", 512),
            ("STAGE_BUFFER_SIZE", 0),
            ("CANCEL_GRACE_SECONDS", 0),
            ("JOB_TIMEOUT_SECONDS", -1),
        ],
    )
    def test_out_of_range_values(self, field: str, value) -> None:
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_concurrency_defaults_to_cpu_count(self) -> None:
        assert Settings().MAX_CONCURRENT_JOBS >= 1

    def test_environment_overrides(self, monkeypatch) -> None:
        monkeypatch.setenv("MAX_CONCURRENT_JOBS", "3")
        monkeypatch.setenv("VIDEO_BITRATE_OVERRIDES", '{"mp4": {"fhd": 6000000}}')

        config = Settings()

        assert config.MAX_CONCURRENT_JOBS == 3
        assert config.VIDEO_BITRATE_OVERRIDES == {"mp4": {"fhd": 6000000}}
