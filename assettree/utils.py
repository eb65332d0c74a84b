# utils.py
from __future__ import annotations
import subprocess
import time
import uuid
from shutil import which


def new_node_id(kind: str) -> str:
    """Return a fresh node id such as ``folder-1718000000000-3f9a0c1b2``."""
    return f"{kind}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def copy_to_clipboard(text: str) -> bool:
    """
    Linux-only clipboard copy.

    Priority:
      1) wl-copy (Wayland)
      2) xclip  (X11)
      3) xsel   (X11)

    Returns True on success, False otherwise.
    """
    commands = [
        ["wl-copy"],
        ["xclip", "-selection", "clipboard"],
        ["xsel", "--clipboard", "--input"],
    ]
    for command in commands:
        if not which(command[0]):
            continue
        try:
            p = subprocess.run(command, input=text.encode("utf-8"), check=True)
            return p.returncode == 0
        except (OSError, subprocess.CalledProcessError):
            # fall through to the next tool
            continue
    return False
