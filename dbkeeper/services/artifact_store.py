from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from dbkeeper.core.config import MANIFEST_VERSION, get_settings
from dbkeeper.core.errors import ConfigurationError


MANIFEST_FILENAME = "manifest.json"
SIGNATURE_FILENAME = "signature.sig"
ENCRYPTED_SUFFIX = ".enc"

_NONCE_BYTES = 12
_TAG_BYTES = 16
_CHUNK_BYTES = 1024 * 1024


@dataclass(frozen=True)
class ArtifactManifest:
    # Keep manifests stable and explicit for restore tooling.
    artifact_id: str
    target: str
    strategy: str
    created_at: str
    data_file: str
    sha256: str
    size_bytes: int
    encrypted: bool
    consistency: dict[str, Any]
    row_counts: dict[str, int] | None
    app_version: str
    manifest_version: str = MANIFEST_VERSION
    tool_version: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "target": self.target,
            "strategy": self.strategy,
            "created_at": self.created_at,
            "data_file": self.data_file,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "encrypted": self.encrypted,
            "consistency": self.consistency,
            "row_counts": self.row_counts,
            "app_version": self.app_version,
            "manifest_version": self.manifest_version,
            "tool_version": self.tool_version,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ArtifactManifest":
        return cls(
            artifact_id=payload["artifact_id"],
            target=payload["target"],
            strategy=payload["strategy"],
            created_at=payload["created_at"],
            data_file=payload["data_file"],
            sha256=payload["sha256"],
            size_bytes=int(payload["size_bytes"]),
            encrypted=bool(payload.get("encrypted", False)),
            consistency=payload.get("consistency") or {},
            row_counts=payload.get("row_counts"),
            app_version=payload.get("app_version", "unknown"),
            manifest_version=payload.get("manifest_version", MANIFEST_VERSION),
            tool_version=payload.get("tool_version"),
            extra=payload.get("extra") or {},
        )


class ArtifactStorage(Protocol):
    # Allow custom storage backends for backup artifacts.
    def artifact_dir(self, target: str, artifact_id: str) -> Path:
        ...

    def free_bytes(self) -> int:
        ...

    def remove(self, location: str) -> None:
        ...


@dataclass(frozen=True)
class LocalArtifactStorage:
    # Default local filesystem storage: <base>/<target>/<artifact_id>/.
    base_dir: Path

    def artifact_dir(self, target: str, artifact_id: str) -> Path:
        path = self.base_dir / target / artifact_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def free_bytes(self) -> int:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return shutil.disk_usage(self.base_dir).free

    def remove(self, location: str) -> None:
        path = Path(location)
        # Never follow a catalog row outside the backup root.
        base = self.base_dir.resolve()
        resolved = path.resolve()
        if base not in resolved.parents:
            raise ConfigurationError(f"refusing to remove {path}: outside backup root {base}")
        shutil.rmtree(resolved, ignore_errors=True)


def default_storage() -> LocalArtifactStorage:
    return LocalArtifactStorage(Path(get_settings().backup_dir))


def load_app_version() -> str:
    try:
        from importlib.metadata import version

        return version("dbkeeper")
    except Exception:  # noqa: BLE001 - running from a source tree
        return "unknown"


def _chunks(handle: BinaryIO, limit: int | None = None) -> Iterator[bytes]:
    remaining = limit
    while remaining is None or remaining > 0:
        size = _CHUNK_BYTES if remaining is None else min(_CHUNK_BYTES, remaining)
        chunk = handle.read(size)
        if not chunk:
            return
        if remaining is not None:
            remaining -= len(chunk)
        yield chunk


def _decode_key(raw: str, setting: str) -> bytes:
    # `openssl rand -hex 32` and `openssl rand -base64 32` output both work.
    cleaned = raw.strip()
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        pass
    try:
        return base64.b64decode(cleaned, validate=True)
    except binascii.Error as exc:
        raise ConfigurationError(f"{setting} is neither hex nor base64") from exc


def encryption_key() -> bytes:
    raw = get_settings().backup_encryption_key
    if not raw:
        raise ConfigurationError("BACKUP_ENCRYPTION_KEY must be set to seal or restore .enc artifacts")
    key = _decode_key(raw, "BACKUP_ENCRYPTION_KEY")
    if len(key) not in (16, 24, 32):
        raise ConfigurationError(f"BACKUP_ENCRYPTION_KEY decodes to {len(key)} bytes; AES needs 16, 24 or 32")
    return key


def signing_key() -> bytes:
    raw = get_settings().backup_signing_key
    if not raw:
        raise ConfigurationError("BACKUP_SIGNING_KEY must be set while manifest signing is enabled")
    return raw.encode("utf-8")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in _chunks(handle):
            digest.update(chunk)
    return digest.hexdigest()


def _seal(plain: BinaryIO, nonce: bytes, key: bytes) -> Iterator[bytes]:
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    yield nonce
    for chunk in _chunks(plain):
        yield encryptor.update(chunk)
    yield encryptor.finalize()
    yield encryptor.tag


def encrypt_file(source: Path, destination: Path, key: bytes) -> str:
    """Seal ``source`` into ``destination`` as nonce | ciphertext | GCM tag.

    Returns the SHA-256 of the sealed bytes, which is the checksum the catalog
    records for encrypted artifacts, so large dumps are read only once.
    """
    digest = hashlib.sha256()
    with source.open("rb") as plain, destination.open("wb") as sealed:
        for piece in _seal(plain, os.urandom(_NONCE_BYTES), key):
            digest.update(piece)
            sealed.write(piece)
    return digest.hexdigest()


def decrypt_file(source: Path, destination: Path, key: bytes) -> None:
    # A wrong key or altered bytes raise InvalidTag and leave no plaintext behind.
    body_bytes = source.stat().st_size - _NONCE_BYTES - _TAG_BYTES
    if body_bytes < 0:
        raise ValueError(f"{source.name} is shorter than a nonce and tag; not a sealed artifact")
    with source.open("rb") as sealed:
        nonce = sealed.read(_NONCE_BYTES)
        sealed.seek(-_TAG_BYTES, os.SEEK_END)
        tag = sealed.read(_TAG_BYTES)
        sealed.seek(_NONCE_BYTES)
        decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
        try:
            with destination.open("wb") as plain:
                for chunk in _chunks(sealed, limit=body_bytes):
                    plain.write(decryptor.update(chunk))
                plain.write(decryptor.finalize())
        except InvalidTag:
            destination.unlink(missing_ok=True)
            raise


def manifest_signature(manifest: ArtifactManifest, key: bytes) -> str:
    # HMAC over compact sorted JSON, independent of how manifest.json is indented.
    canonical = json.dumps(manifest.to_dict(), separators=(",", ":"), sort_keys=True).encode("utf-8")
    return hmac.new(key, canonical, hashlib.sha256).hexdigest()


def write_manifest(directory: Path, manifest: ArtifactManifest, *, signing: bytes | None = None) -> Path:
    path = directory / MANIFEST_FILENAME
    path.write_text(json.dumps(manifest.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
    if signing is not None:
        (directory / SIGNATURE_FILENAME).write_text(manifest_signature(manifest, signing), encoding="utf-8")
    return path


def load_manifest(directory: Path) -> ArtifactManifest:
    payload = json.loads((directory / MANIFEST_FILENAME).read_text(encoding="utf-8"))
    return ArtifactManifest.from_dict(payload)


def _signature_errors(directory: Path, manifest: ArtifactManifest) -> list[str]:
    signature_path = directory / SIGNATURE_FILENAME
    if not signature_path.exists():
        return ["signature file missing"]
    try:
        key = signing_key()
    except ConfigurationError as exc:
        return [str(exc)]
    recorded = signature_path.read_text(encoding="utf-8").strip()
    if not hmac.compare_digest(manifest_signature(manifest, key), recorded):
        return ["manifest signature invalid"]
    return []


def validate_artifact_dir(directory: Path, *, expected_sha256: str, require_signature: bool) -> list[str]:
    # Validate manifest presence, signature, and the data file checksum.
    errors: list[str] = []
    manifest_path = directory / MANIFEST_FILENAME
    if not manifest_path.exists():
        return [f"manifest missing in {directory}"]
    manifest = load_manifest(directory)
    if manifest.manifest_version != MANIFEST_VERSION:
        errors.append("manifest version mismatch")
    if manifest.sha256 != expected_sha256:
        errors.append(f"manifest checksum {manifest.sha256} differs from catalog {expected_sha256}")
    if require_signature:
        errors.extend(_signature_errors(directory, manifest))

    data_path = directory / manifest.data_file
    if not data_path.exists():
        errors.append(f"missing artifact: {manifest.data_file}")
        return errors
    actual = sha256_file(data_path)
    if actual != expected_sha256:
        errors.append(f"checksum mismatch for {manifest.data_file}: expected {expected_sha256}, got {actual}")
    size = data_path.stat().st_size
    if size != manifest.size_bytes:
        errors.append(f"size mismatch for {manifest.data_file}: expected {manifest.size_bytes}, got {size}")
    return errors
