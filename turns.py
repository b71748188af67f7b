import os
import re
import uuid
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from config import COMMAND_TIMEOUT
from instructions import (
    InvalidInstruction,
    MalformedResponse,
    decode_instruction_set,
    parse_command,
    parse_file_entry,
    parse_file_patch,
)
from llm import UpstreamError
from workspace import CommandFailed, InvalidPathError, ProjectWorkspace, UnknownFileError, run_command

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """
You are an advanced coding assistant. You have an existing project that can contain files. You can do two types of file operations:

1) "files": [
   { "path": "<newFilePath>", "content": "<entire file content>" }
]
   - For brand-new files that do not exist yet.

2) "patches": [
   {
     "file": "<existingFilePath>",
     "instructions": [
       { "lineNumber": 12, "oldText": "...", "newText": "..." }
     ]
   }
]
   - For incremental changes to existing files. Each instruction references a specific line number and modifies it.

You must decide whether to place a file in "files" if it does not exist, or in "patches" if it already exists. Also, you can specify commands as:
  "commands": ["npm install", "node server.js"]

Return ONLY valid JSON with this shape:
{
  "files": [...],
  "patches": [...],
  "commands": [...]
}
No extra text or formatting outside the JSON!
""".strip()

# Turn states, in order.
AWAITING_MODEL = "AwaitingModel"
STREAMING_TOKENS = "StreamingTokens"
PARSING_RESPONSE = "ParsingResponse"
APPLYING_FILES = "ApplyingFiles"
APPLYING_PATCHES = "ApplyingPatches"
RUNNING_COMMANDS = "RunningCommands"
DONE = "Done"
ERRORED = "Errored"


class ProjectNotFound(KeyError):
    pass


class ConversationLog:
    def __init__(self, system_prompt: str = SYSTEM_PROMPT):
        self.system_prompt = system_prompt
        self.entries: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]

    def append_user(self, content: str) -> None:
        self.entries.append({"role": "user", "content": content})

    def append_assistant(self, content: str) -> None:
        self.entries.append({"role": "assistant", "content": content})

    def messages(self) -> List[Dict[str, str]]:
        return [dict(m) for m in self.entries]

    def reset(self) -> None:
        self.entries = self.entries[:1]

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class Project:
    project_id: str
    workspace: ProjectWorkspace
    conversation: ConversationLog = field(default_factory=ConversationLog)
    lock: threading.Lock = field(default_factory=threading.Lock)


class ProjectRegistry:
    """Process-wide table of resident projects.

    Projects enter on create() or load() and stay until the process exits.
    """

    def __init__(self, root: str):
        self.root = root
        self.projects: Dict[str, Project] = {}
        self._lock = threading.Lock()
        os.makedirs(root, exist_ok=True)

    def _project_dir(self, project_id: str) -> str:
        if not project_id or "/" in project_id or "\\" in project_id or project_id in (".", ".."):
            raise ProjectNotFound(project_id)
        return os.path.join(self.root, project_id)

    def create(self, name: str = "") -> Project:
        name = re.sub(r"\s+", "_", (name or "").strip())
        name = name.replace("/", "_").replace("\\", "_").strip(".")
        suffix = uuid.uuid4().hex[:8]
        project_id = f"{name}_{suffix}" if name else f"project_{suffix}"
        project = Project(project_id, ProjectWorkspace(self._project_dir(project_id)))
        project.workspace.materialize()
        with self._lock:
            self.projects[project_id] = project
        logger.info("Created project %s", project_id)
        return project

    def load(self, project_id: str) -> Project:
        root = self._project_dir(project_id)
        with self._lock:
            if project_id in self.projects:
                return self.projects[project_id]
            if not os.path.isdir(root):
                raise ProjectNotFound(project_id)
            project = Project(project_id, ProjectWorkspace(root))
            project.workspace.load_from_disk()
            self.projects[project_id] = project
        logger.info("Loaded project %s into memory", project_id)
        return project

    def get(self, project_id: str) -> Optional[Project]:
        return self.projects.get(project_id)

    def list_projects(self) -> List[Dict[str, Any]]:
        dirs = sorted(e.name for e in os.scandir(self.root) if e.is_dir())
        return [{"project_id": d, "in_memory": d in self.projects} for d in dirs]


@dataclass
class TurnEvent:
    event: str
    data: Dict[str, Any]


def status(text: str, state: str) -> TurnEvent:
    return TurnEvent("status", {"status": text, "state": state})


def error(kind: str, message: str, fatal: bool = False, **extra: Any) -> TurnEvent:
    data = {"kind": kind, "message": message, "fatal": fatal}
    if fatal:
        data["state"] = ERRORED
    data.update(extra)
    return TurnEvent("error", data)


def file_context(workspace: ProjectWorkspace) -> str:
    out = "Here are the current files with line numbers:\n\n"
    for path in workspace.paths():
        out += f"File: {path}\n"
        for n, line in workspace.files[path].numbered():
            out += f"{n}: {line}\n"
        out += "\n"
    return out


def build_messages(project: Project, prompt: str) -> List[Dict[str, str]]:
    return project.conversation.messages() + [
        {"role": "system", "content": file_context(project.workspace)},
        {"role": "user", "content": prompt},
    ]


def _apply_files(project: Project, items: Iterable[Any]) -> Iterator[TurnEvent]:
    for item in items:
        try:
            entry = parse_file_entry(item)
            path = project.workspace.put_file(entry.path, entry.content)
        except (InvalidInstruction, InvalidPathError) as e:
            yield error("InvalidInstruction", str(e))
            continue
        except OSError as e:
            logger.error("Write failed in %s: %s", project.project_id, e)
            yield error("IOError", str(e), path=entry.path)
            continue
        yield TurnEvent("file-written", {"path": path})


def _apply_patches(project: Project, items: Iterable[Any]) -> Iterator[TurnEvent]:
    for item in items:
        try:
            entry = parse_file_patch(item)
            result = project.workspace.patch_file(
                entry.file,
                [(i.lineNumber, i.oldText, i.newText) for i in entry.instructions],
            )
        except (InvalidInstruction, InvalidPathError) as e:
            yield error("InvalidInstruction", str(e))
            continue
        except UnknownFileError as e:
            yield error("UnknownFile", str(e), file=e.path)
            continue
        except OSError as e:
            logger.error("Patch write failed in %s: %s", project.project_id, e)
            yield error("IOError", str(e), file=entry.file)
            continue
        for msg in result.errors:
            yield error("OutOfRange", msg, file=result.path)
        yield TurnEvent("file-patched", {
            "file": result.path,
            "instructions": result.applied,
            "warnings": result.warnings,
            "errors": result.errors,
        })


def _run_commands(project: Project, items: Iterable[Any]) -> Iterator[TurnEvent]:
    for item in items:
        try:
            cmd = parse_command(item)
            for line in run_command(cmd, project.workspace.root, timeout=COMMAND_TIMEOUT):
                yield TurnEvent("command-output", {"command": cmd, "output": line})
        except InvalidInstruction as e:
            yield error("InvalidInstruction", str(e))
            return
        except CommandFailed as e:
            logger.warning("%s", e)
            yield error("CommandFailed", str(e), command=e.command, exit_code=e.exit_code)
            return


TokenSource = Callable[[List[Dict[str, str]]], Iterable[str]]


def run_turn(project: Optional[Project], prompt: str, chat: TokenSource) -> Iterator[TurnEvent]:
    """Drive one prompt through the model and apply its instruction set.

    Yields progress events; fatal problems end the turn with an error event
    instead of raising.
    """
    if project is None:
        yield error("InvalidInput", "Invalid projectId or not loaded in memory", fatal=True)
        return
    if not (prompt or "").strip():
        yield error("InvalidInput", "Empty prompt", fatal=True)
        return

    with project.lock:
        yield status("Contacting model...", AWAITING_MODEL)
        messages = build_messages(project, prompt)

        full_response = ""
        try:
            for text in chat(messages):
                if not text:
                    continue
                if not full_response:
                    yield status("Streaming response...", STREAMING_TOKENS)
                full_response += text
                yield TurnEvent("partial", {"text": text})
        except UpstreamError as e:
            logger.error("Upstream failure for %s: %s", project.project_id, e)
            yield error("UpstreamFailure", str(e), fatal=True)
            return

        # The raw response goes into history even if it fails to decode.
        project.conversation.append_user(prompt)
        project.conversation.append_assistant(full_response)

        yield status("Parsing response...", PARSING_RESPONSE)
        try:
            instruction_set = decode_instruction_set(full_response)
        except MalformedResponse as e:
            yield error("MalformedResponse", str(e), fatal=True)
            return

        if instruction_set.files:
            yield status(f"Writing {len(instruction_set.files)} file(s)...", APPLYING_FILES)
            yield from _apply_files(project, instruction_set.files)
        if instruction_set.patches:
            yield status(f"Applying {len(instruction_set.patches)} patch(es)...", APPLYING_PATCHES)
            yield from _apply_patches(project, instruction_set.patches)
        if instruction_set.commands:
            yield status(f"Running {len(instruction_set.commands)} command(s)...", RUNNING_COMMANDS)
            yield from _run_commands(project, instruction_set.commands)

        yield status("Done", DONE)
        yield TurnEvent("done", {"project_id": project.project_id})
