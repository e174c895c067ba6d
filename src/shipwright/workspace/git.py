"""Async git subprocess runner.

Every git invocation goes through GitRunner.run(), which applies a timeout,
disables interactive prompts and raises GitCommandError on a non-zero exit.
Commands that talk to the remote can be retried on transient failures.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, Sequence, Union

from src.shipwright.retry import retry_async


logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT_SECONDS = 120


class GitCommandError(Exception):
    """Raised when a git command fails or times out.

    Attributes:
        args_list: The git arguments (without the leading "git").
        returncode: Process exit code, or None on timeout.
        stderr: Captured standard error.
    """

    def __init__(
        self,
        args_list: Sequence[str],
        returncode: Optional[int],
        stderr: str,
    ):
        self.args_list = list(args_list)
        self.returncode = returncode
        self.stderr = stderr
        command = " ".join(self.args_list)
        if returncode is None:
            message = f"git {command} {stderr}"
        else:
            message = f"git {command} failed (rc={returncode}): {stderr}"
        super().__init__(message)


class GitRunner:
    """Runs git commands without blocking the event loop.

    Attributes:
        timeout: Seconds before a single command is killed.
        git_path: Executable to run.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS,
        git_path: str = "git",
        retry_attempts: int = 3,
    ):
        self.timeout = timeout
        self.git_path = git_path
        self.retry_attempts = retry_attempts

    async def run(
        self,
        *args: str,
        cwd: Union[str, Path],
        retry: bool = False,
    ) -> str:
        """Run a git command and return its stripped stdout.

        Args:
            *args: git arguments, e.g. "fetch", "origin", "main".
            cwd: Working directory for the command.
            retry: Retry transient failures (use for fetch/push/ls-remote).

        Raises:
            GitCommandError: If the command fails after any retries.
        """
        if not retry:
            return await self._run_once(args, cwd)
        return await retry_async(
            lambda: self._run_once(args, cwd),
            max_attempts=self.retry_attempts,
            description=f"git {args[0]}",
        )

    async def _run_once(self, args: Sequence[str], cwd: Union[str, Path]) -> str:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_path,
                *args,
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise GitCommandError(args, -1, f"Failed to execute git: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise GitCommandError(
                args, None, f"timed out after {self.timeout}s"
            ) from exc

        if process.returncode != 0:
            # merge reports conflicts on stdout, everything else on stderr
            error_output = "\n".join(
                part
                for part in (
                    stderr.decode(errors="replace").strip(),
                    stdout.decode(errors="replace").strip(),
                )
                if part
            )
            logger.debug(
                "git command failed",
                extra={
                    "git_args": list(args),
                    "cwd": str(cwd),
                    "returncode": process.returncode,
                    "stderr": error_output[:500],
                },
            )
            raise GitCommandError(args, process.returncode, error_output)

        return stdout.decode(errors="replace").strip()
