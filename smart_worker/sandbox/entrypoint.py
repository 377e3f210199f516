"""Sandbox container entrypoint.

Applies the code changes passed in APP_CODE_CHANGES to the container's
copy of the application, then replaces itself with the application
process (APP_START_COMMAND).
"""

import json
import logging
import os
import shlex
import sys
from typing import Dict, List

from smart_worker.logging import configure_from_env

logger = logging.getLogger(__name__)

APP_DIR = "/app"


def map_path(path: str, root_dir: str, app_dir: str = APP_DIR) -> str:
    """Map a host path under ``root_dir`` onto the container's app tree.

    Raises:
        ValueError: If the mapped path escapes ``app_dir``.
    """
    root = root_dir.rstrip("/")
    relative = path[len(root):] if root and path.startswith(root) else path
    relative = relative.lstrip("/")

    app_root = os.path.realpath(app_dir)
    target = os.path.realpath(os.path.join(app_root, relative))
    if os.path.commonpath([app_root, target]) != app_root or target == app_root:
        raise ValueError(f"refusing to write outside {app_dir}: {path}")
    return target


def apply_code_changes(
    changes: List[Dict[str, str]], root_dir: str, app_dir: str = APP_DIR
) -> List[str]:
    """Overwrite each changed file in the app tree.

    Returns:
        Paths that were written.
    """
    written = []
    for change in changes:
        try:
            target = map_path(change["path"], root_dir, app_dir)
        except ValueError as e:
            logger.error(str(e))
            continue
        logger.info(f"Applying change to {target}")
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            f.write(change["code"])
        written.append(target)
    return written


def main() -> None:
    """Apply changes from the environment, then exec the application."""
    configure_from_env()
    logger.info("Sandbox entrypoint started")

    root_dir = os.environ.get("APP_ROOT_DIR")
    raw_changes = os.environ.get("APP_CODE_CHANGES")

    if not root_dir:
        logger.error("No root directory found in environment variables")
    elif not raw_changes:
        logger.error("No code changes found in environment variables")
    else:
        try:
            changes = json.loads(raw_changes)
            written = apply_code_changes(changes, root_dir)
            logger.info(f"Applied {len(written)} of {len(changes)} code change(s)")
        except (ValueError, KeyError, TypeError, OSError) as e:
            logger.error(f"Error applying code changes: {e}")

    command = shlex.split(os.environ.get("APP_START_COMMAND", "python -m app"))
    logger.info(f"Starting application: {' '.join(command)}")
    sys.stdout.flush()
    os.execvp(command[0], command)


if __name__ == "__main__":
    main()
