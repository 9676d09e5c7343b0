"""Container runtime adapter: docker CLI commands against one host.

Every state-changing method is idempotent: stopping or removing a
container that does not exist is a success, not an error.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Iterable

from shipwright.core.transport import ExecResult, Transport
from shipwright.models.instances import PortMapping

logger = logging.getLogger(__name__)

_ABSENT_MARKERS = ("no such container", "no such object")


class RuntimeCommandError(RuntimeError):
    """A docker command failed for a reason other than absence."""

    def __init__(self, result: ExecResult) -> None:
        self.result = result
        tail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else ""
        super().__init__(
            f"{result.command!r} on {result.target} exited {result.exit_code}"
            + (f": {tail}" if tail else "")
        )


def _is_absent(result: ExecResult) -> bool:
    text = f"{result.stderr}\n{result.stdout}".lower()
    return any(marker in text for marker in _ABSENT_MARKERS)


class DockerRuntime:
    """Runs docker commands on ``host`` through ``transport``.

    Parameters
    ----------
    transport:
        ``LocalTransport`` for ``localhost``, ``SSHTransport`` otherwise.
    host:
        Target host name passed to every ``transport.exec`` call.
    """

    def __init__(self, transport: Transport, host: str) -> None:
        self._transport = transport
        self._host = host

    @property
    def host(self) -> str:
        return self._host

    def _exec(self, command: str) -> ExecResult:
        return self._transport.exec(self._host, command)

    # ------------------------------------------------------------------
    # Idempotent state changes
    # ------------------------------------------------------------------

    def stop(self, name: str) -> bool:
        """Stop ``name``.  Returns ``False`` when there was nothing to stop."""
        result = self._exec(f"docker stop {shlex.quote(name)}")
        if result.ok:
            return True
        if _is_absent(result):
            logger.debug("stop %s on %s: no such container", name, self._host)
            return False
        raise RuntimeCommandError(result)

    def remove(self, name: str) -> bool:
        """Remove ``name``.  Returns ``False`` when there was nothing to remove."""
        result = self._exec(f"docker rm {shlex.quote(name)}")
        if result.ok:
            return True
        if _is_absent(result):
            logger.debug("rm %s on %s: no such container", name, self._host)
            return False
        raise RuntimeCommandError(result)

    def pull(self, image: str) -> None:
        result = self._exec(f"docker pull {shlex.quote(image)}")
        if not result.ok:
            raise RuntimeCommandError(result)

    def run(
        self,
        name: str,
        image: str,
        port_mappings: Iterable[PortMapping] = (),
        restart_policy: str = "unless-stopped",
    ) -> str:
        """Start a detached container; returns the container id docker printed."""
        parts = [
            "docker", "run",
            "--name", shlex.quote(name),
            "-d",
            "--restart", shlex.quote(restart_policy),
        ]
        for mapping in port_mappings:
            parts += ["-p", str(mapping)]
        parts.append(shlex.quote(image))
        result = self._exec(" ".join(parts))
        if not result.ok:
            raise RuntimeCommandError(result)
        return result.stdout.strip()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_running(self, name: str) -> bool:
        result = self._exec(
            f"docker inspect -f '{{{{.State.Running}}}}' {shlex.quote(name)}"
        )
        if not result.ok:
            if _is_absent(result):
                return False
            raise RuntimeCommandError(result)
        return result.stdout.strip().lower() == "true"

    def current_image(self, name: str) -> str | None:
        """Image reference the container was started from, or ``None`` if absent."""
        result = self._exec(
            f"docker inspect -f '{{{{.Config.Image}}}}' {shlex.quote(name)}"
        )
        if not result.ok:
            if _is_absent(result):
                return None
            raise RuntimeCommandError(result)
        return result.stdout.strip() or None
