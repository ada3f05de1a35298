"""
Kubectl runner for Cluster Remediator.

Runs kubectl with a pre-bound argument vector produced by the safety
validator. Never goes through a shell.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .config import settings
from .errors import InfrastructureUnavailable

logger = structlog.get_logger(__name__)


@dataclass
class CommandOutput:
    """Raw result of one kubectl invocation."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class KubectlRunner:
    """Thin async wrapper around the kubectl binary."""

    def __init__(
        self,
        kubectl_path: str = "kubectl",
        kubeconfig_path: Optional[str] = None,
        context: Optional[str] = None,
    ):
        self.kubectl_path = kubectl_path
        self.kubeconfig_path = kubeconfig_path
        self.context = context

    def _base_args(self) -> list[str]:
        args = []
        if self.kubeconfig_path:
            args.append(f"--kubeconfig={self.kubeconfig_path}")
        if self.context:
            args.append(f"--context={self.context}")
        return args

    async def run(
        self,
        args: Sequence[str],
        timeout: float,
        stdin: Optional[str] = None,
    ) -> CommandOutput:
        """Run ``kubectl <args>`` and capture its output.

        A timeout kills the process and is reported as exit code -1. A missing
        binary raises InfrastructureUnavailable.
        """
        cmd = [self.kubectl_path, *self._base_args(), *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            logger.error("kubectl unavailable", path=self.kubectl_path, error=str(exc))
            raise InfrastructureUnavailable(
                f"kubectl binary not usable at {self.kubectl_path}: {exc}"
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin.encode() if stdin is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("kubectl timed out", args=list(args)[:3], timeout=timeout)
            return CommandOutput(
                stdout="",
                stderr=f"command timed out after {timeout:g}s",
                exit_code=-1,
            )

        return CommandOutput(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )


# Global instance
_kubectl_runner: Optional[KubectlRunner] = None


def get_kubectl_runner() -> KubectlRunner:
    """Get or create the KubectlRunner singleton."""
    global _kubectl_runner
    if _kubectl_runner is None:
        _kubectl_runner = KubectlRunner(
            kubectl_path=settings.kubectl_path,
            kubeconfig_path=settings.kubeconfig_path,
            context=settings.kube_context,
        )
    return _kubectl_runner
