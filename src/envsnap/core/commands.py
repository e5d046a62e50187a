"""Thin wrapper around external commands used by the collaborators."""

from __future__ import annotations

import logging
import subprocess
from typing import List, Optional

from .errors import CommandError

logger = logging.getLogger(__name__)


def run_command(
    args: List[str],
    input_data: Optional[bytes] = None,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
) -> bytes:
    """Run a command and return its raw stdout.

    Raises:
        CommandError: If the binary is missing, times out or exits non-zero.
    """
    logger.debug("Running command: %s", " ".join(args))
    try:
        result = subprocess.run(
            args,
            input=input_data,
            cwd=cwd,
            capture_output=True,
            timeout=timeout,
            check=True,
        )
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {args[0]}", args) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(f"Command timed out after {timeout}s", args) from e
    except subprocess.CalledProcessError as e:
        output = (e.stderr or e.stdout or b"").decode("utf-8", "replace").strip()
        raise CommandError(
            f"Command failed with exit code {e.returncode}: {output or 'no output'}",
            args,
            output,
        ) from e
    return result.stdout
