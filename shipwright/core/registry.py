"""Artifact Registry clients — immutable artifacts keyed by commit, plus aliases.

Two backends share the ``ArtifactRegistry`` protocol:

- ``LocalArtifactRegistry``: filesystem, content-addressed blobs laid out as
  ``{base}/blobs/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat`` with JSON key and
  alias indexes next to them.
- ``DockerArtifactRegistry``: the docker CLI through a transport.  A key is
  the image tag ``<repository>:<key>``; an alias is another tag on the same
  image.

An alias never dangles: ``tag`` on a missing key raises
``ArtifactNotFoundError`` and leaves the alias untouched.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import SecretStr

from shipwright.core.hasher import content_address, safe_name, sha256_hex
from shipwright.core.transport import LOCAL_TARGET, ExecResult, Transport
from shipwright.models.artifacts import Alias, Artifact, ArtifactHandle

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RegistryError(RuntimeError):
    """Base class for registry failures."""


class ArtifactNotFoundError(RegistryError):
    """The registry has no artifact (or alias) under the requested name."""

    def __init__(self, key: str, detail: str = "") -> None:
        self.key = key
        message = f"artifact not found: {key}"
        super().__init__(f"{message} ({detail})" if detail else message)


class ArtifactConflictError(RegistryError):
    """A key was pushed again with different content."""


class ArtifactIntegrityError(RegistryError):
    """A stored blob no longer matches its content address."""


class RegistryAuthError(RegistryError):
    """The registry rejected our credentials."""


class RegistryNetworkError(RegistryError):
    """The registry could not be reached."""


@runtime_checkable
class ArtifactRegistry(Protocol):
    """Narrow interface the executor and rollout coordinator depend on."""

    def push(self, key: str, source: bytes | str | Path) -> Artifact:
        ...

    def pull(self, key: str) -> ArtifactHandle:
        ...

    def tag(self, key: str, alias: str) -> Alias:
        ...

    def resolve(self, alias: str) -> Artifact:
        ...

    def exists(self, key: str) -> bool:
        ...


# ---------------------------------------------------------------------------
# Local filesystem registry
# ---------------------------------------------------------------------------


class LocalArtifactRegistry:
    """Content-addressed artifact registry on the local filesystem.

    Pushing the same content under the same key twice is a no-op; pushing
    different content under an existing key raises ``ArtifactConflictError``.
    There is no delete: garbage collection is somebody else's job.

    Parameters
    ----------
    base_path:
        Root directory of the registry.  Created if missing.
    source_root:
        Directory relative ``push`` sources are resolved against (the
        pipeline directory).  Defaults to the process working directory.
    """

    def __init__(self, base_path: Path, *, source_root: Path | None = None) -> None:
        self._base = Path(base_path)
        self._source_root = Path(source_root) if source_root else None
        self._blobs = self._base / "blobs"
        self._keys = self._base / "keys"
        self._aliases = self._base / "aliases"
        for directory in (self._blobs, self._keys, self._aliases):
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    def _blob_path(self, digest: str) -> Path:
        digest = digest.removeprefix("sha256:")
        return self._blobs / digest[:2] / digest[2:4] / f"{digest}.dat"

    # Index files are named by the sha256 of the key or alias; the name
    # itself lives in the JSON record.
    def _key_path(self, key: str) -> Path:
        return self._keys / f"{sha256_hex(key.encode())}.json"

    def _alias_path(self, alias: str) -> Path:
        return self._aliases / f"{sha256_hex(alias.encode())}.json"

    @staticmethod
    def _write_atomic(path: Path, text: str) -> None:
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Push / pull
    # ------------------------------------------------------------------

    def push(self, key: str, source: bytes | str | Path) -> Artifact:
        """Store ``source`` (raw bytes or a file path) under ``key``."""
        if isinstance(source, bytes):
            data = source
            origin = ""
        else:
            path = Path(source)
            if self._source_root is not None and not path.is_absolute():
                path = self._source_root / path
            try:
                data = path.read_bytes()
            except OSError as exc:
                raise RegistryError(f"cannot read artifact source {path}: {exc}") from exc
            origin = str(path)

        address = content_address(data)
        existing = self._load_artifact(key)
        if existing is not None:
            if existing.digest != address:
                raise ArtifactConflictError(
                    f"artifact {key!r} already exists with digest {existing.digest}; "
                    f"refusing to overwrite with {address}"
                )
            logger.debug("artifact %s already present, push is a no-op", key)
            return existing

        blob = self._blob_path(address)
        if not blob.exists():
            blob.parent.mkdir(parents=True, exist_ok=True)
            blob.write_bytes(data)

        artifact = Artifact(
            key=key,
            digest=address,
            size_bytes=len(data),
            metadata={"source": origin} if origin else {},
        )
        self._write_atomic(self._key_path(key), artifact.model_dump_json())
        logger.info("pushed artifact %s (%s, %d bytes)", key, address, len(data))
        return artifact

    def pull(self, key: str) -> ArtifactHandle:
        artifact = self._load_artifact(key)
        if artifact is None:
            raise ArtifactNotFoundError(key)
        blob = self._blob_path(artifact.digest)
        if not blob.exists():
            raise ArtifactNotFoundError(key, "blob missing")
        if sha256_hex(blob.read_bytes()) != artifact.digest.removeprefix("sha256:"):
            raise ArtifactIntegrityError(
                f"blob for {key} does not match {artifact.digest}"
            )
        return ArtifactHandle(artifact=artifact, location=str(blob))

    def exists(self, key: str) -> bool:
        artifact = self._load_artifact(key)
        return artifact is not None and self._blob_path(artifact.digest).exists()

    def _load_artifact(self, key: str) -> Artifact | None:
        path = self._key_path(key)
        if not path.exists():
            return None
        return Artifact.model_validate_json(path.read_text(encoding="utf-8"))

    # ------------------------------------------------------------------
    # Aliases
    # ------------------------------------------------------------------

    def tag(self, key: str, alias: str) -> Alias:
        """Point ``alias`` at ``key`` (last writer wins)."""
        if not self.exists(key):
            raise ArtifactNotFoundError(key, f"cannot tag as {alias!r}")
        record = Alias(name=alias, key=key)
        self._write_atomic(self._alias_path(alias), record.model_dump_json())
        logger.info("alias %s -> %s", alias, key)
        return record

    def resolve(self, alias: str) -> Artifact:
        path = self._alias_path(alias)
        if not path.exists():
            raise ArtifactNotFoundError(alias, "no such alias")
        record = Alias.model_validate_json(path.read_text(encoding="utf-8"))
        artifact = self._load_artifact(record.key)
        if artifact is None:
            raise ArtifactNotFoundError(record.key, f"target of alias {alias!r}")
        return artifact

    def aliases(self) -> list[Alias]:
        return sorted(
            (Alias.model_validate_json(p.read_text(encoding="utf-8"))
             for p in self._aliases.glob("*.json")),
            key=lambda a: a.name,
        )


# ---------------------------------------------------------------------------
# Docker registry
# ---------------------------------------------------------------------------

_AUTH_MARKERS = ("unauthorized", "authentication required", "denied", "no basic auth")
_NETWORK_MARKERS = (
    "connection refused",
    "no such host",
    "i/o timeout",
    "tls handshake timeout",
    "network is unreachable",
    "cannot connect to the docker daemon",
)
_NOT_FOUND_MARKERS = ("manifest unknown", "not found", "no such image", "no such manifest")
_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")
_COMMIT_RE = re.compile(r"^[0-9a-f]{7,40}$")


def classify_failure(result: ExecResult, ref: str) -> RegistryError:
    """Turn a failed docker invocation into the matching registry error."""
    text = f"{result.stderr}\n{result.stdout}".lower()
    detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else f"exit {result.exit_code}"
    if result.exit_code == 127:
        return RegistryError(f"docker is not available on {result.target}: {detail}")
    if any(m in text for m in _AUTH_MARKERS):
        return RegistryAuthError(f"registry rejected credentials for {ref}: {detail}")
    if any(m in text for m in _NETWORK_MARKERS):
        return RegistryNetworkError(f"registry unreachable for {ref}: {detail}")
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return ArtifactNotFoundError(ref, detail)
    return RegistryError(f"{result.command!r} failed for {ref}: {detail}")


class DockerArtifactRegistry:
    """Image registry driven through the docker CLI.

    ``push`` expects ``source`` to name a locally built image (for example
    ``appster:build``); it is retagged ``<repository>:<key>`` and pushed.
    ``tag`` pulls the keyed image, retags it and pushes the alias tag, which
    is how ``latest`` and release tags get published.

    Parameters
    ----------
    transport:
        Where docker commands run (normally a ``LocalTransport``).
    repository:
        Image repository, e.g. ``registry.example.com/appster``.
    registry_url, username, password:
        Optional credentials used by ``login``.  The password is handed to
        ``docker login --password-stdin`` through the environment.
    """

    def __init__(
        self,
        transport: Transport,
        repository: str,
        *,
        target: str = LOCAL_TARGET,
        registry_url: str | None = None,
        username: str | None = None,
        password: SecretStr | None = None,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._target = target
        self._registry_url = registry_url
        self._username = username
        self._password = password
        self._logged_in = False

    def ref(self, name: str) -> str:
        return f"{self._repository}:{safe_name(name)}"

    def _docker(self, command: str, ref: str, *, env: dict[str, str] | None = None) -> ExecResult:
        result = self._transport.exec(self._target, command, env=env)
        if not result.ok:
            raise classify_failure(result, ref)
        return result

    def login(self) -> None:
        """Authenticate once per registry object, if credentials are configured."""
        if self._logged_in or not self._username or self._password is None:
            return
        server = shlex.quote(self._registry_url) if self._registry_url else ""
        command = (
            f'printf "%s" "$SHIPWRIGHT_REGISTRY_PASSWORD" | docker login '
            f"-u {shlex.quote(self._username)} --password-stdin {server}"
        ).rstrip()
        self._docker(
            command,
            self._registry_url or "docker hub",
            env={"SHIPWRIGHT_REGISTRY_PASSWORD": self._password.get_secret_value()},
        )
        self._logged_in = True
        logger.info("logged in to %s as %s", self._registry_url or "docker hub", self._username)

    # ------------------------------------------------------------------
    # ArtifactRegistry
    # ------------------------------------------------------------------

    def push(self, key: str, source: bytes | str | Path) -> Artifact:
        if isinstance(source, bytes):
            raise RegistryError("docker registry pushes images, not raw bytes")
        self.login()
        ref = self.ref(key)
        local = str(source)
        if local != ref:
            self._docker(f"docker tag {shlex.quote(local)} {shlex.quote(ref)}", ref)
        result = self._docker(f"docker push {shlex.quote(ref)}", ref)
        match = _DIGEST_RE.search(result.stdout)
        logger.info("pushed image %s", ref)
        return Artifact(
            key=key,
            digest=match.group(1) if match else "",
            metadata={"image": ref, "source": local},
        )

    def pull(self, key: str) -> ArtifactHandle:
        self.login()
        ref = self.ref(key)
        self._docker(f"docker pull {shlex.quote(ref)}", ref)
        return ArtifactHandle(artifact=Artifact(key=key, metadata={"image": ref}), location=ref)

    def exists(self, key: str) -> bool:
        """Ask the registry for the manifest without pulling layers."""
        self.login()
        ref = self.ref(key)
        try:
            self._docker(f"docker manifest inspect {shlex.quote(ref)}", ref)
        except ArtifactNotFoundError:
            return False
        return True

    def tag(self, key: str, alias: str) -> Alias:
        """``docker pull <key>``, ``docker tag <key> <alias>``, ``docker push <alias>``.

        The pull runs first, so a missing key fails before the alias moves.
        """
        self.login()
        source = self.ref(key)
        target = self.ref(alias)
        self._docker(f"docker pull {shlex.quote(source)}", source)
        self._docker(f"docker tag {shlex.quote(source)} {shlex.quote(target)}", target)
        self._docker(f"docker push {shlex.quote(target)}", target)
        logger.info("alias %s -> %s", target, source)
        return Alias(name=alias, key=key)

    def resolve(self, alias: str) -> Artifact:
        """Find the commit-keyed tag that shares an image with ``alias``.

        Only tags that look like commit identifiers are considered keys.
        """
        self.login()
        ref = self.ref(alias)
        self._docker(f"docker pull {shlex.quote(ref)}", ref)
        result = self._docker(
            f"docker image inspect --format '{{{{json .RepoTags}}}}' {shlex.quote(ref)}",
            ref,
        )
        try:
            tags = json.loads(result.stdout.strip() or "[]")
        except json.JSONDecodeError as exc:
            raise RegistryError(f"unexpected inspect output for {ref}") from exc
        prefix = f"{self._repository}:"
        keys = [
            t[len(prefix):] for t in tags
            if t.startswith(prefix) and _COMMIT_RE.match(t[len(prefix):])
        ]
        if not keys:
            raise ArtifactNotFoundError(alias, "alias does not point at a commit-keyed image")
        return Artifact(key=keys[0], metadata={"image": f"{prefix}{keys[0]}"})
