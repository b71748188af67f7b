import json
import logging
from typing import Any, Dict, Iterator, List

import anyio
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from config import PROJECTS_ROOT
from llm import chat_complete, chat_stream
from turns import Project, ProjectNotFound, ProjectRegistry, TurnEvent, run_turn
from workspace import InvalidPathError, UnknownFileError

logger = logging.getLogger(__name__)

registry = ProjectRegistry(PROJECTS_ROOT)

app = FastAPI(title="Project Patch Engine Backend (Prompt + Stream + Apply)")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/projects", StaticFiles(directory=PROJECTS_ROOT, html=True), name="projects")


class ProjectCreateRequest(BaseModel):
    name: str = ""


class ProjectRequest(BaseModel):
    project_id: str


class UpdateRequest(BaseModel):
    project_id: str = ""
    prompt: str = ""
    stream: bool = True


def _sse(ev: TurnEvent) -> str:
    return f"event: {ev.event}\ndata: {json.dumps(ev.data, ensure_ascii=False)}\n\n"


def _resident(project_id: str) -> Project:
    project = registry.get(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not loaded in memory")
    return project


def _single_blob(messages: List[Dict[str, str]]) -> Iterator[str]:
    yield chat_complete(messages)


@app.get("/health")
def health():
    return {"ok": True, "projects_root": PROJECTS_ROOT, "resident": len(registry.projects)}


@app.get("/api/projects")
def api_list_projects():
    return {"ok": True, "projects": registry.list_projects()}


@app.post("/api/projects")
def api_create_project(req: ProjectCreateRequest):
    project = registry.create(req.name)
    return {"ok": True, "project_id": project.project_id}


@app.post("/api/projects/load")
async def api_load_project(req: ProjectRequest):
    try:
        project = await anyio.to_thread.run_sync(registry.load, req.project_id)
    except ProjectNotFound:
        raise HTTPException(status_code=404, detail="Project folder not found.")
    return {
        "ok": True,
        "project_id": project.project_id,
        "status": "Project loaded into memory",
        "files": project.workspace.paths(),
    }


@app.post("/api/projects/update")
def api_update_project(req: UpdateRequest):
    project = registry.get(req.project_id)
    chat = chat_stream if req.stream else _single_blob

    def event_stream() -> Iterator[str]:
        for ev in run_turn(project, req.prompt, chat):
            yield _sse(ev)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/api/projects/clear")
def api_clear_conversation(req: ProjectRequest):
    project = _resident(req.project_id)
    with project.lock:
        project.conversation.reset()
    return {"ok": True, "project_id": project.project_id, "message": "Conversation cleared"}


@app.get("/api/projects/{project_id}/conversation")
def api_conversation(project_id: str):
    project = _resident(project_id)
    return {"ok": True, "project_id": project_id, "messages": project.conversation.messages()}


@app.get("/api/workspace/list")
def api_workspace_list(project_id: str):
    project = _resident(project_id)
    return {"ok": True, "project_id": project_id, "files": project.workspace.paths()}


@app.get("/api/workspace/read")
def api_workspace_read(project_id: str, path: str = "") -> Dict[str, Any]:
    if not path:
        return {"ok": False, "error": "path_required"}
    project = _resident(project_id)
    try:
        content = project.workspace.read_file(path)
    except (UnknownFileError, InvalidPathError):
        return {"ok": False, "error": "File not found", "path": path}
    return {"ok": True, "path": path, "content": content}
