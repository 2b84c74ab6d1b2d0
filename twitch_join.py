#!/usr/bin/env python3
"""
Twitch Join - join FLV stream fragments into a single file

Pipeline:
- Repair each fragment's metadata with yamdi into a private workspace
- Concatenate the repaired fragments with ffmpeg's concat demuxer (stream copy)
- Follow ffmpeg's status line to drive a progress bar
- Atomically move the result into place, removing the workspace on every exit path
"""

import argparse
import collections
import errno
import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import traceback
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from rich.console import Console
from rich.progress import (
    Progress,
    SpinnerColumn,
    TextColumn,
    BarColumn,
    TimeElapsedColumn,
)
from tqdm import tqdm


__version__ = "1.0.0"
__author__ = "Twitch Join Project"
__license__ = "MIT"

JOINED_SUFFIX = "-joined.flv"
DEFAULT_OUTPUT_NAME = "joined.flv"
STATUS_MARKER = "frame="
SIZE_FIELD = "size="

# Characters that would break a single-quoted concat manifest line
MANIFEST_UNSAFE_CHARS = ("'", "\r", "\n")

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "twitch-join" / "config"


class JoinError(Exception):
    """Base exception for twitch-join errors"""

    pass


class UsageError(JoinError):
    """Bad invocation: no inputs, or inputs that do not exist"""

    pass


class WorkspaceError(JoinError):
    """Filesystem failures around the workspace and the published output"""

    pass


class ExternalToolError(JoinError):
    """An external tool could not be run or exited non-zero"""

    def __init__(self, message: str, command: Sequence[str] = (),
                 returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.output = output


def derive_output_name(names: Sequence[str]) -> str:
    """Infer an output filename from the common prefix of the input names.

    Only the smallest and largest names (in sorted order) are compared, so the
    result does not depend on the order the inputs were given in. Directory
    components are ignored; the joined file always lands in the working
    directory.
    """
    base_names = sorted(os.path.basename(str(name)) for name in names)
    if not base_names:
        return DEFAULT_OUTPUT_NAME

    first, last = base_names[0], base_names[-1]
    for i, char in enumerate(first):
        if i >= len(last):
            break
        if char != last[i]:
            if i == 0:
                break
            return first[:i] + JOINED_SUFFIX
    return DEFAULT_OUTPUT_NAME


def sanitize_manifest_name(name: str) -> str:
    """Drop characters that cannot appear inside a quoted manifest entry"""
    for char in MANIFEST_UNSAFE_CHARS:
        name = name.replace(char, "")
    return name


def parse_progress_size(line: str) -> Optional[int]:
    """Extract the output size in kB from an ffmpeg status line.

    ffmpeg rewrites a line such as

        frame=  250 fps=0.0 q=-1.0 size=    2048kB time=00:00:10.00 ...

    in place. Anything that is not a status line, or whose size column cannot
    be read, returns None.
    """
    line = line.strip()
    if not line.startswith(STATUS_MARKER):
        return None

    fields = line.split()
    for i, field in enumerate(fields):
        if not field.startswith(SIZE_FIELD):
            continue
        value = field[len(SIZE_FIELD):]
        if not value and i + 1 < len(fields):
            value = fields[i + 1]
        try:
            return int(value.rstrip("kKiB"))
        except ValueError:
            return None
    return None


class Workspace:
    """Private temporary directory holding repaired fragments and the manifest"""

    def __init__(self, path: Path, manifest_path: Path, manifest_file):
        self.path = path
        self.manifest_path = manifest_path
        self._manifest = manifest_file
        self._used_names = set()
        self._lock = threading.Lock()
        self._removed = False
        self.logger = logging.getLogger("twitch_join")

    @classmethod
    def create(cls, temp_dir: Optional[Union[str, Path]] = None) -> "Workspace":
        """Create the workspace directory and an empty manifest inside it"""
        try:
            path = Path(tempfile.mkdtemp(prefix="twitch-join-", dir=temp_dir))
        except OSError as e:
            raise WorkspaceError(f"Error creating temp dir: {e}") from e
        if "\r" in str(path) or "\n" in str(path):
            shutil.rmtree(path, ignore_errors=True)
            raise WorkspaceError(f"Temp dir cannot hold line breaks: {path!r}")

        try:
            fd, manifest_name = tempfile.mkstemp(prefix="list", dir=path)
            manifest_file = os.fdopen(fd, "w", encoding="utf-8")
        except OSError as e:
            shutil.rmtree(path, ignore_errors=True)
            raise WorkspaceError(f"Error creating list file: {e}") from e

        return cls(path, Path(manifest_name), manifest_file)

    @property
    def removed(self) -> bool:
        return self._removed

    def _reserve(self, name: str) -> Path:
        candidate = name
        position = len(self._used_names)
        while candidate in self._used_names:
            position += 1
            candidate = f"{position:04d}-{name}"
        self._used_names.add(candidate)
        return self.path / candidate

    def fragment_path(self, fragment: Union[str, Path]) -> Path:
        """Destination for the repaired copy of a fragment"""
        name = sanitize_manifest_name(os.path.basename(str(fragment)))
        return self._reserve(name or "fragment.flv")

    def output_path(self, name: Union[str, Path]) -> Path:
        """Path of the joined file; reserve it before naming any fragment"""
        name = sanitize_manifest_name(os.path.basename(str(name)))
        return self._reserve(name or DEFAULT_OUTPUT_NAME)

    def append_manifest(self, path: Union[str, Path]) -> None:
        # concat demuxer escaping for quotes left in the workspace directory
        quoted = str(path).replace("'", "'\\''")
        try:
            self._manifest.write(f"file '{quoted}'\n")
        except OSError as e:
            raise WorkspaceError(f"Error writing list file: {e}") from e

    def close_manifest(self) -> None:
        if not self._manifest.closed:
            self._manifest.close()

    def cleanup(self) -> bool:
        """Remove the workspace.

        Safe to call from both the normal exit path and a signal handler: only
        the first caller removes anything, and a call that arrives while
        another one is in progress returns immediately. Returns True for the
        call that did the removal.
        """
        if not self._lock.acquire(blocking=False):
            return False
        try:
            if self._removed:
                return False
            self._removed = True
            try:
                self._manifest.close()
            except OSError:
                pass
            try:
                shutil.rmtree(self.path)
                self.logger.debug(f"Removed workspace {self.path}")
            except OSError as e:
                self.logger.warning(f"Couldn't remove workspace {self.path}: {e}")
            return True
        finally:
            self._lock.release()

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False


class ProgressIndicator:
    """Progress bar over a single counter bounded by ``total``"""

    STYLES = ("rich", "tqdm")

    def __init__(
        self,
        total: int,
        description: str = "Joining",
        style: str = "rich",
        enabled: bool = True,
        console: Optional[Console] = None,
        file=None,
    ):
        if style not in self.STYLES:
            raise ValueError(f"Unknown progress style: {style}")
        self.total = max(int(total), 0)
        self.description = description
        self.style = style
        self.enabled = enabled
        self.console = console
        self.file = file
        self.finished = False
        self._value = 0
        self._lock = threading.Lock()
        self._progress = None
        self._task = None
        self._pbar = None

    @property
    def value(self) -> int:
        return self._value

    def start(self) -> "ProgressIndicator":
        if not self.enabled:
            return self
        if self.style == "rich":
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total} kB"),
                TimeElapsedColumn(),
                console=self.console,
            )
            self._progress.start()
            self._task = self._progress.add_task(self.description, total=self.total)
        else:
            self._pbar = tqdm(
                total=self.total, desc=self.description, unit="kB", file=self.file
            )
        return self

    def set(self, value: int) -> None:
        """Move the counter forward; values past ``total`` are clamped"""
        with self._lock:
            if self.finished:
                return
            value = min(max(int(value), 0), self.total)
            if value <= self._value:
                return
            self._value = value
            self._render()

    def finish(self) -> None:
        with self._lock:
            if self.finished:
                return
            self._value = self.total
            self._render()
            self.finished = True
            if self._progress is not None:
                self._progress.stop()
            if self._pbar is not None:
                self._pbar.close()

    def _render(self) -> None:
        if self._progress is not None:
            self._progress.update(self._task, completed=self._value)
        elif self._pbar is not None:
            self._pbar.n = self._value
            self._pbar.refresh()

    def __enter__(self) -> "ProgressIndicator":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.finish()
        return False


class FlvJoiner:
    """Repair, concatenate and publish FLV fragments"""

    DIAGNOSTIC_DRAIN_TIMEOUT = 5.0

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or {}

        self.console = Console()
        self.logger = self._setup_logging()

        self.repair_tool = self.config.get("repair_tool", "yamdi")
        self.concat_tool = self.config.get("concat_tool", "ffmpeg")
        self.temp_dir = self.config.get("temp_dir") or None
        self.progress_style = self.config.get("progress_style", "rich")
        self.show_progress = self.config.get("progress", True)
        self.verbose = self.config.get("verbose", False)
        if self.progress_style not in ProgressIndicator.STYLES:
            raise UsageError(
                f"Unknown progress_style {self.progress_style!r}, "
                f"expected one of: {', '.join(ProgressIndicator.STYLES)}"
            )

        # TTY detection for progress bars (disable in non-interactive terminals like CI/CD)
        self.is_tty = sys.stdout.isatty()

        self.workspace: Optional[Workspace] = None
        self.progress: Optional[ProgressIndicator] = None
        self._active_process: Optional[subprocess.Popen] = None
        self._interrupted_by: Optional[int] = None
        self._previous_handlers = {}

    def _setup_logging(self) -> logging.Logger:
        """Setup structured logging"""
        level = logging.DEBUG if self.config.get("verbose") else logging.INFO

        logger = logging.getLogger("twitch_join")
        logger.setLevel(level)

        # Avoid duplicate handlers
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def _install_signal_handlers(self) -> None:
        """Remove the workspace and stop the active tool on SIGINT/SIGTERM"""

        def signal_handler(signum, frame):
            self.logger.warning("Received interrupt signal, cleaning up...")
            self._interrupted_by = signum
            self._terminate_active_process()
            if self.workspace is not None and not self.workspace.cleanup():
                # Cleanup already ran or is running on the normal exit path
                return
            sys.exit(128 + signum)

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous_handlers[signum] = signal.signal(signum, signal_handler)
            except (ValueError, OSError):
                # Signal handling is only available on the main thread
                pass

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            try:
                signal.signal(signum, handler)
            except (ValueError, OSError, TypeError):
                pass
        self._previous_handlers = {}

    def _terminate_active_process(self) -> None:
        proc = self._active_process
        if proc is None or proc.poll() is not None:
            return
        # No wait here: the interrupted main thread may hold the Popen wait lock
        try:
            proc.terminate()
        except OSError:
            pass

    def _run_tool(self, cmd: List[str]) -> str:
        """Run a tool to completion, returning its combined output"""
        self.logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise ExternalToolError(f"Cannot run {cmd[0]}: {e}", command=cmd) from e

        self._active_process = proc
        try:
            output, _ = proc.communicate()
        finally:
            self._active_process = None

        if proc.returncode != 0:
            raise ExternalToolError(
                f"{os.path.basename(cmd[0])} exited with status {proc.returncode}",
                command=cmd,
                returncode=proc.returncode,
                output=output or "",
            )
        return output or ""

    def repair_fragments(
        self, fragments: Sequence[Union[str, Path]], workspace: Workspace
    ) -> Tuple[Path, int]:
        """Fix each fragment's metadata into the workspace and write the manifest.

        Returns the manifest path and the total size of the repaired copies in
        kB, which is the upper bound for the join's progress bar.
        """
        destinations = []
        for fragment in fragments:
            destination = workspace.fragment_path(fragment)
            self.logger.info(f"Fixing metadata for {fragment}")
            self._run_tool(
                [self.repair_tool, "-i", str(fragment), "-o", str(destination)]
            )
            workspace.append_manifest(destination)
            destinations.append(destination)
        workspace.close_manifest()

        total_size = 0
        for destination in destinations:
            try:
                total_size += destination.stat().st_size // 1024
            except OSError as e:
                raise WorkspaceError(f"Error reading {destination}: {e}") from e
        return workspace.manifest_path, total_size

    def _progress_listener(self, stream, indicator: ProgressIndicator, tail) -> None:
        # Ends by itself when ffmpeg exits and the pipe closes
        try:
            for line in stream:
                if line.strip():
                    tail.append(line.strip())
                size = parse_progress_size(line)
                if size is not None:
                    indicator.set(size)
        except (OSError, ValueError):
            pass
        finally:
            stream.close()

    def concatenate(
        self, manifest_path: Union[str, Path], output_path: Union[str, Path], total_size: int
    ) -> None:
        """Join the manifest's entries with ffmpeg, without re-encoding"""
        cmd = [
            self.concat_tool,
            "-hide_banner",
            "-f", "concat",
            "-safe", "0",
            "-i", str(manifest_path),
            "-c", "copy",
            str(output_path),
        ]
        self.logger.info("Joining...")
        self.logger.debug(f"Running: {' '.join(cmd)}")

        self.progress = ProgressIndicator(
            total_size,
            description="Joining",
            style=self.progress_style,
            enabled=self.show_progress and self.is_tty,
            console=self.console,
        )
        tail = collections.deque(maxlen=20)

        # text mode splits on the carriage returns ffmpeg uses to redraw its status line
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise ExternalToolError(f"Cannot run {cmd[0]}: {e}", command=cmd) from e

        self._active_process = proc
        listener = threading.Thread(
            target=self._progress_listener,
            args=(proc.stderr, self.progress, tail),
            name="ffmpeg-progress",
            daemon=True,
        )
        try:
            self.progress.start()
            listener.start()
            returncode = proc.wait()
        finally:
            self._active_process = None
            self.progress.finish()

        if returncode != 0:
            # ffmpeg's error message is the last thing it writes; drain it first
            listener.join(timeout=self.DIAGNOSTIC_DRAIN_TIMEOUT)
            raise ExternalToolError(
                f"{os.path.basename(cmd[0])} exited with status {returncode}",
                command=cmd,
                returncode=returncode,
                output="\n".join(list(tail)),
            )

    def publish(self, temp_output: Union[str, Path], final_output: Union[str, Path]) -> Path:
        """Move the joined file to its final name in one rename"""
        temp_output = Path(temp_output)
        final_output = Path(final_output)
        self.logger.info(f"Moving to {final_output}")
        try:
            os.replace(temp_output, final_output)
            return final_output
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise WorkspaceError(f"Error renaming file: {e}") from e

        # Workspace is on another filesystem: stage beside the target, then rename
        staged = None
        try:
            fd, staged = tempfile.mkstemp(
                prefix=".twitch-join-", suffix=".part", dir=final_output.parent
            )
            os.close(fd)
            shutil.copyfile(temp_output, staged)
            os.replace(staged, final_output)
        except OSError as e:
            if staged and os.path.exists(staged):
                os.unlink(staged)
            raise WorkspaceError(f"Error renaming file: {e}") from e
        return final_output

    def join(
        self,
        fragments: Sequence[Union[str, Path]],
        output_name: Optional[Union[str, Path]] = None,
    ) -> Path:
        """Run the whole pipeline and return the path of the joined file"""
        fragments = list(fragments)
        if not fragments:
            raise UsageError("Please specify some input flvs (-h for usage)")
        for fragment in fragments:
            if not os.path.isfile(fragment):
                raise UsageError(f"Input file does not exist: {fragment}")

        if not output_name:
            output_name = derive_output_name(fragments)
        output_name = Path(output_name)
        self.logger.info(f"Output filename: {output_name}")

        self._interrupted_by = None
        self.workspace = None
        self._install_signal_handlers()
        try:
            self.workspace = Workspace.create(self.temp_dir)
            self.logger.info(f"Created temp dir: {self.workspace.path}")
            temp_output = self.workspace.output_path(output_name.name)
            manifest_path, total_size = self.repair_fragments(fragments, self.workspace)
            self.concatenate(manifest_path, temp_output, total_size)
            published = self.publish(temp_output, output_name)
        finally:
            if self.workspace is not None:
                self.workspace.cleanup()
            self._restore_signal_handlers()

        if self._interrupted_by is not None:
            sys.exit(128 + self._interrupted_by)
        return published


def create_config_file(config_path: Path) -> bool:
    """Create a default configuration file"""
    default_config = """# Twitch Join Configuration
# Uncomment and modify values as needed

# Metadata repair tool, invoked as: <tool> -i input.flv -o output.flv
# repair_tool = "yamdi"

# Concatenation tool, invoked with ffmpeg's concat demuxer arguments
# concat_tool = "ffmpeg"

# Directory in which the temporary workspace is created
# temp_dir = "/var/tmp"

# Progress bar style: rich or tqdm
# progress_style = "rich"

# verbose = false
"""

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(default_config)
        return True
    except (OSError, PermissionError) as e:
        print(f"Error creating config file: {e}")
        return False


def load_config_file(config_path: Path) -> Dict:
    """Load configuration from file with error handling"""
    if not config_path.exists():
        return {}

    config = {}
    line_num = 0
    try:
        with open(config_path, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                if "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip("\"'")

                    if value.lower() in ("true", "false"):
                        config[key] = value.lower() == "true"
                    elif value.isdigit():
                        config[key] = int(value)
                    else:
                        config[key] = value

    except Exception as e:
        print(f"Warning: Error loading config file on line {line_num}: {e}")

    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point with comprehensive error handling"""
    parser = argparse.ArgumentParser(
        prog="twitch-join",
        usage="%(prog)s [-o output.flv] input1.flv input2.flv ...",
        description="Join FLV stream fragments into a single file.",
        epilog="If output filename is not specified, it will be "
               "inferred from the input filenames.",
    )
    parser.add_argument(
        "fragments", nargs="*", metavar="input.flv", help="FLV fragments, in join order"
    )
    parser.add_argument("-o", "--output", help="output filename")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument(
        "--no-progress", action="store_true", help="Disable progress bars"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Configuration file path",
    )
    parser.add_argument(
        "--create-config", action="store_true", help="Create default config"
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    args = parser.parse_args(argv)

    if args.create_config:
        if create_config_file(args.config):
            print(f"Created default configuration file: {args.config}")
            return 0
        print(f"Failed to create configuration file: {args.config}")
        return 1

    if not args.fragments:
        parser.error("Please specify some input flvs (-h for usage)")

    config = load_config_file(args.config)
    config["progress"] = not args.no_progress
    if args.verbose:
        config["verbose"] = True

    try:
        joiner = FlvJoiner(config)
        published = joiner.join(args.fragments, args.output)
        joiner.console.print(f"[green]✓[/green] Joined {len(args.fragments)} files into {published}")
        return 0
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except ExternalToolError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.output:
            print(e.output, file=sys.stderr)
        return 1
    except JoinError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1


def cli_main():
    """Synchronous entry point for console scripts"""
    return main()


if __name__ == "__main__":
    sys.exit(cli_main())
