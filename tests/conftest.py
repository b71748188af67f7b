import os
import tempfile

import pytest

# Keep imported modules away from the real projects directory.
os.environ.setdefault("PROJECTS_ROOT", tempfile.mkdtemp(prefix="projects-"))

import main  # noqa: E402
from turns import ProjectRegistry  # noqa: E402


@pytest.fixture
def registry(tmp_path, monkeypatch):
    reg = ProjectRegistry(str(tmp_path / "projects"))
    monkeypatch.setattr(main, "registry", reg)
    return reg


def fake_chat(*chunks):
    """Stand-in for the streaming model: records the messages it was sent."""
    calls = []

    def chat(messages):
        calls.append(messages)
        for c in chunks:
            yield c

    chat.calls = calls
    return chat
