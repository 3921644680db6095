"""yt-dlp invocation: metadata probe and download-to-temp-file.

Endpoints depend on the ``Extractor`` interface only; ``YtDlpExtractor`` is
the subprocess implementation.
"""
import asyncio
import logging
import math
import os
import re
import uuid
from collections import deque
from contextlib import suppress
from enum import Enum
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Protocol

import anyio

from vidrelay.config.settings import config
from vidrelay.models.internal import LocalTempFile, VideoInfo

logger = logging.getLogger(__name__)

ERROR_MAX_CHARS = 200
READ_SIZE = 4096
TEMP_PREFIX = "ytdlp_"

_PROGRESS = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
_LINE_BREAK = re.compile(r"[\r\n]")
# per-format intermediates such as ytdlp_<id>.f137.mp4 before merging
_FORMAT_INTERMEDIATE = re.compile(r"\.f\d+\.")


class InvocationOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED_EXIT_CODE = "failed_exit_code"
    FAILED_TIMEOUT = "failed_timeout"
    FAILED_SPAWN_ERROR = "failed_spawn_error"


class ExtractorError(Exception):
    """The single terminal failure of one extractor invocation"""

    def __init__(self, outcome: InvocationOutcome, message: str):
        self.outcome = outcome
        self.message = message[:ERROR_MAX_CHARS]
        super().__init__(self.message)


class Extractor(Protocol):
    async def probe(self, url: str) -> VideoInfo: ...

    async def download(self, url: str, audio_only: bool) -> LocalTempFile: ...


class CompletedProcess(NamedTuple):
    """Subprocess result"""
    returncode: int
    stdout: bytes
    stderr: bytes


def extractor_env() -> Dict[str, str]:
    """Environment whose PATH also covers the extractor and its JS runtime"""
    env = dict(os.environ)
    extra = [os.path.expanduser(p) for p in config.extractor.extra_paths]
    env["PATH"] = os.pathsep.join(extra + [env.get("PATH", "")])
    return env


async def terminate_process(process: asyncio.subprocess.Process, grace: float) -> None:
    """SIGTERM, then SIGKILL if the process outlives the grace period"""
    if process.returncode is not None:
        return
    with suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()


class SubprocessExecutor:
    """Execute subprocess with consistent error handling"""

    @staticmethod
    async def run(
        cmd: List[str],
        timeout: float,
        env: Optional[Dict[str, str]] = None,
    ) -> CompletedProcess:
        """
        Run subprocess with timeout and proper cleanup.
        The process never outlives this call, whether it times out,
        fails or the caller is cancelled.
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            env=env,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout
            )
            return CompletedProcess(
                returncode=process.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        finally:
            if process.returncode is None:
                with anyio.CancelScope(shield=True):
                    with suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()


class YTDLPCommandBuilder:
    """Build yt-dlp commands"""

    @staticmethod
    def _common() -> List[str]:
        cmd = [
            config.extractor.binary,
            '--no-warnings',
            '--no-playlist',
            '--socket-timeout', str(config.extractor.socket_timeout),
        ]
        if config.extractor.js_runtime:
            cmd.extend(['--js-runtimes', config.extractor.js_runtime])
        return cmd

    @staticmethod
    def build_probe_command(url: str) -> List[str]:
        """Print title, extension and duration on three lines, download nothing"""
        cmd = YTDLPCommandBuilder._common()
        cmd.extend([
            '--skip-download',
            '--print', '%(title)s',
            '--print', '%(ext)s',
            '--print', '%(duration)s',
        ])
        # "--" keeps a URL from ever being parsed as an option
        cmd.extend(['--', url])
        return cmd

    @staticmethod
    def build_download_command(url: str, audio_only: bool, output_template: str) -> List[str]:
        """Download a single merged file to output_template"""
        cmd = YTDLPCommandBuilder._common()
        cmd.extend(['--progress', '--newline'])

        if audio_only:
            cmd.extend(['-f', 'bestaudio', '-x', '--audio-format', config.extractor.audio_format])
        else:
            cmd.extend(['-f', config.extractor.video_format, '--merge-output-format', 'mp4'])

        cmd.extend(['-o', output_template, '--', url])
        return cmd

    @staticmethod
    def build_version_command() -> List[str]:
        return [config.extractor.binary, '--version']


def parse_probe_output(stdout: bytes) -> Optional[VideoInfo]:
    """Parse the three --print lines; None if the output is too short"""
    lines = [line.rstrip("\r") for line in stdout.decode(errors="replace").strip().split("\n")]
    if len(lines) < 3:
        return None

    try:
        duration = float(lines[2])
    except ValueError:
        duration = 0.0
    if not math.isfinite(duration):
        duration = 0.0

    return VideoInfo(
        title=lines[0] or "video",
        container_ext=lines[1] or "mp4",
        duration_seconds=duration,
    )


def summarize_stderr(lines) -> str:
    """Prefer yt-dlp's ERROR lines over the general tail"""
    errors = [line for line in lines if line.startswith("ERROR")]
    return "\n".join(errors or lines)[:ERROR_MAX_CHARS]


class ProgressMonitor:
    """Drains extractor output, logging progress every 10%"""

    def __init__(self, label: str, max_lines: int):
        self.label = label
        self.last_logged = -10
        self.stderr_tail = deque(maxlen=max_lines)

    def feed(self, line: str, is_stderr: bool) -> None:
        line = line.strip()
        if not line:
            return

        match = _PROGRESS.search(line)
        if match:
            progress = int(float(match.group(1)))
            if progress >= self.last_logged + 10:
                self.last_logged = progress - progress % 10
                logger.info(f"{self.label}: {progress}%")
            return

        if is_stderr:
            self.stderr_tail.append(line)
        logger.debug(f"{self.label} yt-dlp: {line[:ERROR_MAX_CHARS]}")

    async def drain(self, stream: asyncio.StreamReader, is_stderr: bool) -> None:
        pending = ""
        while True:
            chunk = await stream.read(READ_SIZE)
            if not chunk:
                break
            pending += chunk.decode(errors="replace")
            *lines, pending = _LINE_BREAK.split(pending)
            for line in lines:
                self.feed(line, is_stderr)
        self.feed(pending, is_stderr)


def discard_outputs(temp_dir: Path, temp_id: str, keep: Optional[Path] = None) -> None:
    """Remove every file an invocation produced (.part, fragments, output)"""
    for path in temp_dir.glob(f"{temp_id}*"):
        if keep is not None and path == keep:
            continue
        try:
            path.unlink()
            logger.info(f"Removed partial download {path.name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")


def locate_output(temp_dir: Path, temp_id: str, expected_ext: str) -> Optional[Path]:
    expected = temp_dir / f"{temp_id}.{expected_ext}"
    if expected.is_file():
        return expected
    candidates = sorted(
        p for p in temp_dir.glob(f"{temp_id}.*")
        if p.is_file()
        and p.suffix not in (".part", ".ytdl", ".temp")
        and not _FORMAT_INTERMEDIATE.search(p.name)
    )
    return candidates[0] if candidates else None


class YtDlpExtractor:
    """Extractor backed by the yt-dlp command line"""

    async def probe(self, url: str) -> VideoInfo:
        cmd = YTDLPCommandBuilder.build_probe_command(url)
        try:
            result = await SubprocessExecutor.run(
                cmd,
                timeout=config.extractor.probe_timeout_seconds,
                env=extractor_env(),
            )
        except asyncio.TimeoutError:
            logger.error(f"Probe timed out after {config.extractor.probe_timeout_seconds}s")
            raise ExtractorError(InvocationOutcome.FAILED_TIMEOUT, "Probe timed out")
        except OSError as e:
            logger.error(f"Failed to start extractor: {e}")
            raise ExtractorError(InvocationOutcome.FAILED_SPAWN_ERROR, f"Failed to start extractor: {e}")

        if result.returncode != 0:
            error_msg = result.stderr.decode(errors="replace").strip()
            logger.error(f"Probe failed with code {result.returncode}: {error_msg[:500]}")
            raise ExtractorError(
                InvocationOutcome.FAILED_EXIT_CODE,
                summarize_stderr(error_msg.splitlines()) or f"yt-dlp exited with {result.returncode}",
            )

        info = parse_probe_output(result.stdout)
        if info is None:
            logger.error(f"Unexpected probe output: {result.stdout[:200]!r}")
            raise ExtractorError(InvocationOutcome.FAILED_EXIT_CODE, "Unexpected probe output")
        return info

    async def download(self, url: str, audio_only: bool) -> LocalTempFile:
        settings = config.extractor
        expected_ext = settings.audio_format if audio_only else "mp4"
        temp_dir = Path(settings.temp_dir)
        temp_dir.mkdir(parents=True, exist_ok=True)
        temp_id = f"{TEMP_PREFIX}{uuid.uuid4().hex}"
        template = str(temp_dir / f"{temp_id}.%(ext)s")

        cmd = YTDLPCommandBuilder.build_download_command(url, audio_only, template)
        logger.info(f"Starting yt-dlp download to {temp_id}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=extractor_env(),
            )
        except OSError as e:
            logger.error(f"Failed to start extractor: {e}")
            raise ExtractorError(InvocationOutcome.FAILED_SPAWN_ERROR, f"Failed to start extractor: {e}")

        monitor = ProgressMonitor(temp_id, settings.stderr_max_lines)
        drains = [
            asyncio.create_task(monitor.drain(process.stdout, is_stderr=False)),
            asyncio.create_task(monitor.drain(process.stderr, is_stderr=True)),
        ]
        succeeded = False

        try:
            try:
                returncode = await asyncio.wait_for(
                    process.wait(),
                    timeout=settings.download_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.error(f"Download timed out after {settings.download_timeout_seconds}s, terminating")
                await terminate_process(process, settings.terminate_grace_seconds)
                raise ExtractorError(InvocationOutcome.FAILED_TIMEOUT, "Download timeout")

            # Let the drains pick up the last lines before judging the exit code
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.gather(*drains, return_exceptions=True), timeout=1.0)

            if returncode != 0:
                summary = summarize_stderr(list(monitor.stderr_tail))
                logger.error(f"yt-dlp failed with code {returncode}: {summary}")
                raise ExtractorError(InvocationOutcome.FAILED_EXIT_CODE, f"Download failed: {summary}")

            output = locate_output(temp_dir, temp_id, expected_ext)
            if output is None:
                raise ExtractorError(InvocationOutcome.FAILED_EXIT_CODE, "Output file not found after download")

            discard_outputs(temp_dir, temp_id, keep=output)
            size = output.stat().st_size
            logger.info(f"Download completed: {output.name} ({size / 1024 / 1024:.1f} MB)")
            succeeded = True
            return LocalTempFile(path=output, size_bytes=size)
        finally:
            with anyio.CancelScope(shield=True):
                # Reached with the process alive only when the caller was cancelled
                if process.returncode is None:
                    logger.warning(f"Download {temp_id} abandoned, terminating yt-dlp")
                    await terminate_process(process, settings.terminate_grace_seconds)
                for task in drains:
                    task.cancel()
                await asyncio.gather(*drains, return_exceptions=True)
                if not succeeded:
                    discard_outputs(temp_dir, temp_id)

    async def version(self) -> str:
        try:
            result = await SubprocessExecutor.run(
                YTDLPCommandBuilder.build_version_command(),
                timeout=10.0,
                env=extractor_env(),
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not read extractor version: {e}")
            return "unknown"
        if result.returncode != 0:
            return "unknown"
        return result.stdout.decode(errors="replace").strip() or "unknown"


extractor = YtDlpExtractor()


def get_extractor() -> Extractor:
    """FastAPI dependency; tests override it with a fake"""
    return extractor
