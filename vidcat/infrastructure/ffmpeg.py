import logging
import queue
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Optional
from vidcat.config.models import TranscoderConfig
from vidcat.domain.errors import (
    EmptyOutput,
    EncoderAborted,
    EncoderFailed,
    OutputDirectoryError,
    OutsideSourceRoot,
    SpawnFailed,
    TimeoutExceeded,
)
from vidcat.infrastructure.ffprobe import FFprobeAdapter


class FFmpegAdapter:
    """Transcodes one source file into a web-friendly MP4 under the output root.

    The output mirrors the source's path relative to the source root. Encoding
    goes to ``<output>.tmp`` which is renamed only after the result is verified.
    """

    def __init__(
        self,
        config: TranscoderConfig,
        source_root: Path,
        output_root: Path,
        ffprobe_adapter: Optional[FFprobeAdapter] = None,
    ):
        self.config = config
        # Scanned paths are absolute; relative roots would never match them
        self.source_root = Path(source_root).absolute()
        self.output_root = Path(output_root).absolute()
        self.ffprobe_adapter = ffprobe_adapter or FFprobeAdapter(config.ffprobe_path, timeout=config.probe_timeout)
        self.logger = logging.getLogger(__name__)
        self._processes = set()
        self._processes_lock = threading.Lock()
        self._aborted = False

    def output_path_for(self, source_path: Path) -> Path:
        try:
            relative = Path(source_path).absolute().relative_to(self.source_root)
        except ValueError:
            raise OutsideSourceRoot(f"{source_path} is not under source root {self.source_root}") from None
        return self.output_root / relative

    @staticmethod
    def temp_path_for(output_path: Path) -> Path:
        return output_path.with_name(output_path.name + ".tmp")

    def timeout_for(self, duration: float) -> float:
        if duration <= 0:
            return self.config.fallback_timeout
        return max(self.config.min_timeout, duration * self.config.timeout_multiplier)

    def _build_command(self, source_path: Path, tmp_path: Path) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        return [
            self.config.ffmpeg_path,
            "-y",  # Overwrite a stale .tmp from an earlier attempt
            "-nostdin",
            "-hide_banner",
            "-i", str(source_path),
            "-c:v", self.config.video_codec,
            "-preset", self.config.preset,
            "-pix_fmt", self.config.pixel_format,
            "-c:a", self.config.audio_codec,
            "-movflags", "+faststart",  # moov atom first for progressive playback
            # .tmp extension doesn't indicate format
            "-f", "mp4",
            str(tmp_path),
        ]

    def _probe_duration(self, source_path: Path) -> float:
        try:
            return self.ffprobe_adapter.get_duration(source_path)
        except Exception as e:
            self.logger.warning(f"Duration probe failed for {source_path.name}, using fallback timeout: {e}")
            return 0.0

    @staticmethod
    def _discard(tmp_path: Path):
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass

    def _kill(self, process: subprocess.Popen):
        process.kill()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self.logger.error(f"Encoder pid={process.pid} did not exit after kill")

    @property
    def active_encoders(self) -> int:
        with self._processes_lock:
            return len(self._processes)

    def abort_all(self) -> int:
        """Kills every running encoder and refuses new ones. Returns how many were killed.

        Used when the worker is going down: killed jobs stay unacknowledged and
        the broker redelivers them to the next worker.
        """
        with self._processes_lock:
            self._aborted = True
            running = list(self._processes)
        for process in running:
            self.logger.warning(f"Killing encoder pid={process.pid} on shutdown")
            try:
                process.kill()
            except OSError as e:
                self.logger.warning(f"Could not kill encoder pid={process.pid}: {e}")
        return len(running)

    def _wait(self, process: subprocess.Popen, deadline: float, timeout: float, filename: str) -> int:
        """Drains stderr line by line until exit or deadline; kills the encoder on expiry."""
        lines: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            try:
                if process.stderr:
                    for line in process.stderr:
                        lines.put(line)
            except (OSError, ValueError) as e:
                self.logger.warning(f"Stopped reading ffmpeg stderr for {filename}: {e}")
            finally:
                lines.put(None)

        reader_thread = threading.Thread(target=_reader, name=f"ffmpeg-stderr-{filename}", daemon=True)
        reader_thread.start()

        while True:
            if time.monotonic() >= deadline:
                self.logger.error(f"FFMPEG_TIMEOUT: {filename} exceeded {timeout:.1f}s, killing")
                self._kill(process)
                raise TimeoutExceeded(timeout)
            try:
                line = lines.get(timeout=0.1)
            except queue.Empty:
                if process.poll() is not None:
                    break
                continue
            if line is None:
                break
            line = line.rstrip()
            if line:
                self.logger.debug(f"ffmpeg[{filename}]: {line}")

        # stderr closed; the process may still be flushing the container
        try:
            process.wait(timeout=max(0.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            self.logger.error(f"FFMPEG_TIMEOUT: {filename} exceeded {timeout:.1f}s, killing")
            self._kill(process)
            raise TimeoutExceeded(timeout)
        return process.returncode

    def transcode(self, source_path: Path) -> Path:
        """Encodes source_path and returns the verified output path.

        Raises a TranscodeError subclass on failure; the partial output is
        removed before raising.
        """
        source_path = Path(source_path)
        filename = source_path.name
        output_path = self.output_path_for(source_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputDirectoryError(f"Cannot create output directory {output_path.parent}: {e}") from e

        duration = self._probe_duration(source_path)
        timeout = self.timeout_for(duration)
        tmp_path = self.temp_path_for(output_path)
        cmd = self._build_command(source_path, tmp_path)

        self.logger.info(f"FFMPEG_START: {filename} duration={duration:.1f}s timeout={timeout:.1f}s")
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        start_time = time.monotonic()

        with self._processes_lock:
            if self._aborted:
                raise EncoderAborted(f"Encoder is shutting down, not starting {filename}")
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    # Metadata in stderr is not always UTF-8
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except OSError as e:
                raise SpawnFailed(f"Cannot start {cmd[0]}: {e}") from e
            self._processes.add(process)

        try:
            returncode = self._wait(process, start_time + timeout, timeout, filename)
        except TimeoutExceeded:
            self._discard(tmp_path)
            raise
        finally:
            with self._processes_lock:
                self._processes.discard(process)

        elapsed = time.monotonic() - start_time
        if returncode != 0 and self._aborted:
            self._discard(tmp_path)
            self.logger.info(f"FFMPEG_END: {filename} status=aborted elapsed={elapsed:.2f}s")
            raise EncoderAborted(f"{filename} was killed on shutdown")
        if returncode != 0:
            self._discard(tmp_path)
            self.logger.info(f"FFMPEG_END: {filename} status=failed code={returncode} elapsed={elapsed:.2f}s")
            raise EncoderFailed(returncode)

        # Success needs a non-empty output as well as exit 0
        output_size = tmp_path.stat().st_size if tmp_path.exists() else 0
        if output_size == 0:
            self._discard(tmp_path)
            self.logger.info(f"FFMPEG_END: {filename} status=empty_output elapsed={elapsed:.2f}s")
            raise EmptyOutput(f"ffmpeg reported success but {output_path.name} is empty")

        tmp_path.replace(output_path)
        self.logger.info(f"FFMPEG_END: {filename} status=completed size={output_size} elapsed={elapsed:.2f}s")
        return output_path
