import json
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterator


class FFprobeAdapter:
    """Wrapper around ffprobe to read media duration."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @classmethod
    def _parse_clock(cls, value: Any) -> float:
        """Parses '123.4', 'MM:SS.s' or 'HH:MM:SS.s' (Matroska DURATION tags)."""
        if value is None:
            return 0.0
        text = str(value).strip()
        if not text:
            return 0.0
        parts = text.split(":")
        if len(parts) > 3:
            return 0.0
        seconds = 0.0
        for part in parts:
            try:
                seconds = seconds * 60 + float(part)
            except ValueError:
                return 0.0
        return seconds

    @classmethod
    def _ticks_to_seconds(cls, duration_ts: Any, time_base: Any) -> float:
        num_text, sep, den_text = str(time_base or "").partition("/")
        den = cls._to_float(den_text)
        if not sep or den == 0:
            return 0.0
        return cls._to_float(duration_ts) * cls._to_float(num_text) / den

    def _duration_candidates(self, data: Dict[str, Any]) -> Iterator[float]:
        """Duration sources in order of trust: container, tags, stream, ticks, bitrate."""
        fmt = data.get("format", {}) or {}
        streams = data.get("streams", []) or []
        stream = next((s for s in streams if s.get("codec_type") == "video"), streams[0] if streams else {})

        yield self._to_float(fmt.get("duration"))
        fmt_tags = fmt.get("tags", {}) or {}
        yield self._parse_clock(fmt_tags.get("DURATION") or fmt_tags.get("duration"))
        yield self._to_float(stream.get("duration"))
        stream_tags = stream.get("tags", {}) or {}
        yield self._parse_clock(stream_tags.get("DURATION") or stream_tags.get("duration"))
        yield self._ticks_to_seconds(stream.get("duration_ts"), stream.get("time_base"))

        bit_rate = self._to_float(fmt.get("bit_rate") or stream.get("bit_rate"))
        size = self._to_float(fmt.get("size"))
        if bit_rate > 0 and size > 0:
            yield (size * 8) / bit_rate

    def get_duration(self, file_path: Path) -> float:
        """Returns the media duration in seconds, 0.0 when no source reports one.

        Raises RuntimeError if ffprobe cannot run or exits non-zero.
        """
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path),
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RuntimeError(f"ffprobe could not run for {file_path}: {e}") from e
        if result.returncode != 0:
            raise RuntimeError(f"ffprobe failed for {file_path}: {result.stderr}")

        data = json.loads(result.stdout or "{}")
        for duration in self._duration_candidates(data):
            if duration > 0:
                return duration
        return 0.0
