"""Helpers for running external commands (juicer_tools, bedGraphToBigWig, awk).

The heavy lifting of matrix and track encoding is done by established
external tools; this module only runs them, fails fast and keeps the tail of
stderr for the error message.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import textwrap
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


class ExternalCommandError(RuntimeError):
    """Raised when an external command fails."""

    def __init__(
        self,
        message: str,
        *,
        cmd: Sequence[str],
        returncode: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = int(returncode)
        self.stdout = stdout
        self.stderr = stderr


def cmd_to_str(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(x)) for x in cmd)


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    stdout_path: Optional[str | Path] = None,
) -> subprocess.CompletedProcess:
    """Run a command and return the CompletedProcess.

    If ``check`` is True, raise ``ExternalCommandError`` on non-zero exit.

    Notes
    -----
    - We default to capturing stdout+stderr to improve error messages.
    - ``stdout_path`` redirects stdout to a file instead (e.g. awk index
      scripts that print their result).
    """
    if cwd is not None:
        cwd = str(Path(cwd))

    env_merged: Optional[Dict[str, str]]
    if env is None:
        env_merged = None
    else:
        env_merged = dict(os.environ)
        env_merged.update({str(k): str(v) for k, v in env.items()})

    logger.debug("Running command: %s", cmd_to_str(cmd))

    if stdout_path is not None:
        with open(stdout_path, "wt", encoding="utf-8") as out:
            cp = subprocess.run(
                list(map(str, cmd)),
                cwd=cwd,
                env=env_merged,
                check=False,
                stdout=out,
                stderr=subprocess.PIPE if capture else None,
                text=text,
            )
    else:
        cp = subprocess.run(
            list(map(str, cmd)),
            cwd=cwd,
            env=env_merged,
            check=False,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
            text=text,
        )

    if check and cp.returncode != 0:
        raise ExternalCommandError(
            message=textwrap.dedent(
                f"""
                External command failed (exit code {cp.returncode}).

                Command:
                  {cmd_to_str(cmd)}

                STDERR (tail):
                  {(_tail(cp.stderr) if isinstance(cp.stderr, str) else str(cp.stderr))}
                """
            ).strip(),
            cmd=cmd,
            returncode=cp.returncode,
            stdout=cp.stdout if isinstance(cp.stdout, str) else None,
            stderr=cp.stderr if isinstance(cp.stderr, str) else None,
        )

    return cp


def _tail(s: Optional[str], n: int = 3000) -> str:
    if not s:
        return "(empty)"
    s = str(s)
    if len(s) <= n:
        return s
    return "..." + s[-n:]

