from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
from pathlib import Path

DEFAULT_EDITOR = "nano"


class EditorError(RuntimeError):
    pass


def editor_command() -> list[str]:
    return shlex.split(os.environ.get("EDITOR", "").strip() or DEFAULT_EDITOR)


def edit_text(initial: str = "") -> str:
    """Open the user's editor on a scratch file and return what was saved."""
    command = editor_command()
    with tempfile.TemporaryDirectory(prefix="vsop-") as tmp:
        path = Path(tmp) / "source.txt"
        path.write_text(initial, encoding="utf-8")
        try:
            result = subprocess.run([*command, str(path)], check=False)
        except OSError as exc:
            raise EditorError(f"Failed to launch editor {command[0]!r}: {exc}") from exc
        if result.returncode != 0:
            raise EditorError(f"Editor exited with status {result.returncode}.")
        return path.read_text(encoding="utf-8")
