import os
import shlex
import posixpath
import logging
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

NOT_FOUND = "NotFound"
OUT_OF_RANGE = "OutOfRange"


class InvalidPathError(ValueError):
    pass


class UnknownFileError(KeyError):
    def __init__(self, path: str):
        super().__init__(path)
        self.path = path

    def __str__(self) -> str:
        return f"Trying to patch nonexistent file {self.path}"


class CommandFailed(RuntimeError):
    def __init__(self, command: str, exit_code: int, reason: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.reason = reason
        msg = f"Command {command!r} failed with exit code {exit_code}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


def norm_path(path: str) -> str:
    path = str(path).replace("\\", "/").strip().lstrip("/")
    if path:
        path = posixpath.normpath(path)
    if not path or path == "." or path == ".." or path.startswith("../"):
        raise InvalidPathError(f"Invalid path {path!r} (path traversal blocked).")
    return path


@dataclass
class LineOutcome:
    line_number: int
    ok: bool = True
    warning: Optional[str] = None
    error: Optional[str] = None

    def describe(self, path: str) -> str:
        if self.error == OUT_OF_RANGE:
            return f"lineNumber {self.line_number} out of range for {path}"
        if self.warning == NOT_FOUND:
            return f"oldText not found in line {self.line_number} for {path}"
        return f"line {self.line_number} of {path} updated"


class LineStore:
    """One file's content as a list of lines, addressed from 1."""

    def __init__(self, lines: Optional[Iterable[str]] = None):
        self.lines: List[str] = list(lines or [])

    @classmethod
    def from_text(cls, content: str) -> "LineStore":
        return cls(content.split("\n"))

    def to_text(self) -> str:
        return "\n".join(self.lines)

    def __len__(self) -> int:
        return len(self.lines)

    def copy(self) -> "LineStore":
        return LineStore(self.lines)

    def line(self, line_number: int) -> str:
        if line_number < 1 or line_number > len(self.lines):
            raise IndexError(line_number)
        return self.lines[line_number - 1]

    def numbered(self) -> Iterator[Tuple[int, str]]:
        return enumerate(self.lines, start=1)

    def replace_line(self, line_number: int, old_text: str, new_text: str) -> LineOutcome:
        """Replace the first occurrence of old_text in one line.

        A missing old_text leaves the line as it is and is reported as a
        NotFound warning; the model's line numbers may drift, so this is not
        treated as a failure.
        """
        if line_number < 1 or line_number > len(self.lines):
            return LineOutcome(line_number, ok=False, error=OUT_OF_RANGE)
        current = self.lines[line_number - 1]
        if old_text not in current:
            return LineOutcome(line_number, warning=NOT_FOUND)
        self.lines[line_number - 1] = current.replace(old_text, new_text, 1)
        return LineOutcome(line_number)


@dataclass
class PatchResult:
    path: str
    outcomes: List[LineOutcome] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def warnings(self) -> List[str]:
        return [o.describe(self.path) for o in self.outcomes if o.warning]

    @property
    def errors(self) -> List[str]:
        return [o.describe(self.path) for o in self.outcomes if o.error]


class ProjectWorkspace:
    """Relative path -> LineStore mapping, written through to a directory."""

    def __init__(self, root: str):
        self.root = root
        self.files: Dict[str, LineStore] = {}

    def materialize(self) -> str:
        os.makedirs(self.root, exist_ok=True)
        return self.root

    def _disk_path(self, path: str) -> str:
        return os.path.normpath(os.path.join(self.root, path))

    def load_from_disk(self) -> Dict[str, LineStore]:
        files: Dict[str, LineStore] = {}
        for root_dir, _, fnames in os.walk(self.root):
            for fn in fnames:
                full = os.path.join(root_dir, fn)
                if not os.path.isfile(full):
                    continue
                rel = os.path.relpath(full, self.root).replace("\\", "/")
                try:
                    with open(full, "r", encoding="utf-8", newline="") as f:
                        files[rel] = LineStore.from_text(f.read())
                except UnicodeDecodeError:
                    # Binary files stay on disk untouched and are never patched.
                    logger.warning("Skipping non-UTF-8 file %s", rel)
        self.files = files
        logger.info("Loaded %d files from %s", len(files), self.root)
        return files

    def is_known(self, path: str) -> bool:
        return norm_path(path) in self.files

    def paths(self) -> List[str]:
        return sorted(self.files)

    def read_file(self, path: str) -> str:
        path = norm_path(path)
        if path not in self.files:
            raise UnknownFileError(path)
        return self.files[path].to_text()

    def _write(self, path: str, content: str) -> None:
        out_path = self._disk_path(path)
        os.makedirs(os.path.dirname(out_path), exist_ok=True)
        with open(out_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)

    def put_file(self, path: str, content: str) -> str:
        path = norm_path(path)
        self._write(path, content)
        self.files[path] = LineStore.from_text(content)
        return path

    def patch_file(self, path: str, instructions: Iterable[Tuple[int, str, str]]) -> PatchResult:
        path = norm_path(path)
        if path not in self.files:
            raise UnknownFileError(path)
        store = self.files[path].copy()
        result = PatchResult(path)
        for line_number, old_text, new_text in instructions:
            result.outcomes.append(store.replace_line(line_number, old_text, new_text))
        self._write(path, store.to_text())
        self.files[path] = store
        return result


def split_command(command_line: str) -> List[str]:
    return shlex.split(command_line)


def run_command(command_line: str, cwd: str, timeout: float = 0) -> Iterator[str]:
    """Run one command in cwd, yielding combined stdout/stderr lines.

    Raises CommandFailed once the process exits with a nonzero status.
    """
    try:
        args = split_command(command_line)
    except ValueError as e:
        raise CommandFailed(command_line, -1, str(e)) from e
    if not args:
        raise CommandFailed(command_line, -1, "empty command")
    try:
        proc = subprocess.Popen(
            args,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as e:
        raise CommandFailed(command_line, 127, str(e)) from e

    killed = threading.Event()

    def _kill() -> None:
        killed.set()
        proc.kill()

    timer = None
    if timeout and timeout > 0:
        timer = threading.Timer(timeout, _kill)
        timer.start()
    try:
        for line in proc.stdout:
            yield line.rstrip("\n")
        code = proc.wait()
    finally:
        if timer is not None:
            timer.cancel()
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()

    if code != 0:
        raise CommandFailed(command_line, code, "timed out" if killed.is_set() else "")
    logger.info("Command %r finished in %s", command_line, cwd)
