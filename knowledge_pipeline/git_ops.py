"""Git auto-commit for the vault after a pipeline run.

All git operations run inside the vault directory.
"""
import logging
import os
import subprocess
from pathlib import Path
from typing import Tuple

logger = logging.getLogger("knowledge-pipeline.git")

# Environment that disables git pager to prevent hanging on interactive prompts
GIT_ENV = {**os.environ, "GIT_PAGER": ""}

GIT_TIMEOUT = 30


def run_git_command(vault_path: Path, args: list[str],
                    timeout: int = GIT_TIMEOUT) -> Tuple[bool, dict]:
    """Run a git command in the vault directory.

    Returns:
        Tuple of (success, result). Result has stdout/stderr/returncode on
        completion and error on failure.
    """
    try:
        result = subprocess.run(
            ["git"] + args,
            capture_output=True,
            text=True,
            env=GIT_ENV,
            timeout=timeout,
            cwd=vault_path,
        )
    except subprocess.TimeoutExpired:
        logger.error("Git command timed out: git %s", " ".join(args))
        return False, {"success": False, "error": f"Command timed out after {timeout}s"}
    except OSError as e:
        logger.error("Could not run git: %s", e)
        return False, {"success": False, "error": str(e)}

    if result.returncode != 0:
        return False, {
            "success": False,
            "returncode": result.returncode,
            "stdout": result.stdout.strip(),
            "stderr": result.stderr.strip(),
            "error": result.stderr.strip() or result.stdout.strip() or "Command failed",
        }
    return True, {
        "success": True,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "returncode": result.returncode,
    }


def is_git_repo(vault_path: Path) -> bool:
    return (Path(vault_path) / ".git").exists()


def auto_commit(vault_path: Path, message: str) -> dict:
    """Stage everything in the vault and commit.

    Returns:
        {"success": bool, "committed": bool, "error"?: str}
    """
    if not is_git_repo(vault_path):
        return {"success": False, "committed": False, "error": "vault is not a git repository"}

    ok, result = run_git_command(vault_path, ["add", "-A"])
    if not ok:
        return {"success": False, "committed": False, "error": result["error"]}

    ok, result = run_git_command(vault_path, ["commit", "-m", message])
    if not ok:
        output = f"{result.get('stdout', '')} {result.get('error', '')}".lower()
        if "nothing to commit" in output:
            return {"success": True, "committed": False}
        return {"success": False, "committed": False, "error": result["error"]}

    logger.info("Committed vault changes: %s", message)
    return {"success": True, "committed": True}
