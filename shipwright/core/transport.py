"""Command transports — run a command line locally or on a remote host.

A transport never raises because a command exited non-zero: it returns an
``ExecResult`` and the caller decides, via ``allow_non_zero``, whether that
exit is tolerated (the explicit replacement for ``cmd || true``).
``TransportError`` is reserved for the transport itself failing: binary not
found, timeout, or the SSH connection dropping.

Secret values handed to a transport are redacted from every log line and
from the stdout/stderr it returns.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 4000
_SSH_CONNECTION_ERROR = 255
LOCAL_TARGET = "localhost"


class TransportError(RuntimeError):
    """Raised when the transport itself (not the command) fails."""


class ExecResult(BaseModel):
    """Exit code and (redacted, tail-truncated) output of one command."""

    model_config = ConfigDict(frozen=True)

    target: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    allow_non_zero: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 or self.allow_non_zero

    @property
    def tolerated(self) -> bool:
        """Non-zero exit that the caller declared acceptable."""
        return self.exit_code != 0 and self.allow_non_zero


class Redactor:
    """Replaces known secret values with ``***`` in arbitrary text."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        # Longest first so a secret containing another is fully masked.
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, "***")
        return text

    def contains_secret(self, text: str) -> bool:
        return any(secret in text for secret in self._secrets)

    def __bool__(self) -> bool:
        return bool(self._secrets)


@runtime_checkable
class Transport(Protocol):
    """Anything that can execute a command line against a target host."""

    def exec(
        self,
        target: str,
        command: str,
        *,
        allow_non_zero: bool = False,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class _SubprocessTransport:
    """Shared subprocess plumbing for the local and SSH transports."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        secrets: Iterable[str] = (),
    ) -> None:
        self._timeout = timeout
        self._redactor = Redactor(secrets)

    def _run(
        self,
        argv: list[str] | str,
        *,
        target: str,
        command: str,
        allow_non_zero: bool,
        env: dict[str, str] | None,
        shell: bool,
        stdin: str | None = None,
    ) -> ExecResult:
        shown = self._redactor.redact(command)
        logger.debug("exec on %s: %s", target, shown)

        proc_env = os.environ.copy()
        proc_env.update(env or {})
        try:
            proc = subprocess.run(
                argv,
                shell=shell,
                env=proc_env,
                input=stdin,
                text=True,
                capture_output=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransportError(
                f"command timed out after {self._timeout}s on {target}: {shown}"
            ) from exc
        except OSError as exc:
            raise TransportError(f"cannot execute on {target}: {exc}") from exc

        result = ExecResult(
            target=target,
            command=shown,
            exit_code=proc.returncode,
            stdout=self._redactor.redact(proc.stdout or "")[-_OUTPUT_TAIL:],
            stderr=self._redactor.redact(proc.stderr or "")[-_OUTPUT_TAIL:],
            allow_non_zero=allow_non_zero,
        )
        if result.tolerated:
            logger.info(
                "exec on %s exited %d (tolerated): %s", target, result.exit_code, shown
            )
        elif not result.ok:
            logger.warning(
                "exec on %s exited %d: %s", target, result.exit_code, shown
            )
        return result


class LocalTransport(_SubprocessTransport):
    """Runs commands through the local shell; ``target`` is informational.

    Parameters
    ----------
    cwd:
        Working directory for every command.  Defaults to the process cwd.
    timeout:
        Per-command timeout in seconds.  ``None`` waits forever.
    secrets:
        Values to redact from logs and captured output.
    """

    def __init__(
        self,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        secrets: Iterable[str] = (),
    ) -> None:
        super().__init__(timeout=timeout, secrets=secrets)
        self._cwd = cwd

    def exec(
        self,
        target: str,
        command: str,
        *,
        allow_non_zero: bool = False,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        if self._cwd is not None:
            command_line = f"cd {shlex.quote(self._cwd)} && {command}"
        else:
            command_line = command
        return self._run(
            command_line,
            target=target or LOCAL_TARGET,
            command=command,
            allow_non_zero=allow_non_zero,
            env=env,
            shell=True,
        )


class SSHTransport(_SubprocessTransport):
    """Runs commands on ``target`` through the OpenSSH client.

    Session mechanics (agents, known_hosts) belong to the ssh binary; this
    class only builds the invocation.  Environment variables are exported
    in the remote shell, since ``ssh`` does not forward the local env.
    Variables whose value holds a secret are read from stdin, so they never
    appear on either command line.

    Parameters
    ----------
    user:
        Remote login user.  ``None`` uses the ssh default.
    identity_file:
        Private key path passed with ``-i``.
    port:
        Remote SSH port.
    strict_host_key_checking:
        Value for ``StrictHostKeyChecking``.
    """

    def __init__(
        self,
        *,
        user: str | None = None,
        identity_file: str | None = None,
        port: int | None = None,
        strict_host_key_checking: str = "accept-new",
        timeout: float | None = None,
        secrets: Iterable[str] = (),
    ) -> None:
        super().__init__(timeout=timeout, secrets=secrets)
        self._user = user
        self._identity_file = identity_file
        self._port = port
        self._strict = strict_host_key_checking

    def _split_env(self, env: dict[str, str] | None) -> tuple[dict[str, str], dict[str, str]]:
        """Plain variables go on the command line, secret-bearing ones on stdin."""
        plain: dict[str, str] = {}
        secret: dict[str, str] = {}
        for name, value in sorted((env or {}).items()):
            if self._redactor.contains_secret(value):
                if "\n" in value:
                    raise TransportError(
                        f"{name} holds a multi-line secret; it cannot be sent over ssh stdin"
                    )
                secret[name] = value
            else:
                plain[name] = value
        return plain, secret

    def build_argv(self, target: str, command: str, env: dict[str, str] | None = None) -> list[str]:
        argv = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"StrictHostKeyChecking={self._strict}",
        ]
        if self._identity_file:
            argv += ["-i", self._identity_file]
        if self._port:
            argv += ["-p", str(self._port)]
        argv.append(f"{self._user}@{target}" if self._user else target)

        plain, secret = self._split_env(env)
        prelude = [f"IFS= read -r {name}; export {name}" for name in secret]
        if plain:
            prelude.append(
                "export " + " ".join(f"{k}={shlex.quote(v)}" for k, v in plain.items())
            )
        if prelude:
            command = "; ".join(prelude) + f"; {command}"
        argv.append(command)
        return argv

    def stdin_for(self, env: dict[str, str] | None) -> str | None:
        """Secret values, one per line, in the order ``build_argv`` reads them."""
        _, secret = self._split_env(env)
        if not secret:
            return None
        return "".join(f"{value}\n" for value in secret.values())

    def exec(
        self,
        target: str,
        command: str,
        *,
        allow_non_zero: bool = False,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        result = self._run(
            self.build_argv(target, command, env),
            target=target,
            command=command,
            allow_non_zero=allow_non_zero,
            env=None,
            shell=False,
            stdin=self.stdin_for(env),
        )
        if result.exit_code == _SSH_CONNECTION_ERROR:
            raise TransportError(
                f"ssh to {target} failed: {result.stderr.strip() or 'exit 255'}"
            )
        return result
