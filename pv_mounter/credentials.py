"""Per-session SSH credentials and the temp key file registry.

A fresh ECDSA P-256 key pair is generated for every mount run. The private
half is written to a temp file (mode 0600) only for the duration of the
sshfs call; the registry guarantees the file is removed on every exit path,
including interrupts.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path

import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from pv_mounter.models import KeyPair

logger = structlog.get_logger()

KEY_FILE_PREFIX = "pv-mounter-key-"
KEY_FILE_MODE = 0o600


def generate_key_pair() -> KeyPair:
    """Generate an ECDSA P-256 key pair.

    The private key is PKCS8 PEM, the public key SubjectPublicKeyInfo PEM,
    which is what the exposer images install into authorized_keys.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(private_pem=private_pem.decode(), public_pem=public_pem.decode())


class TempFileRegistry:
    """Tracks sensitive temp files created by this process.

    Access is serialized with a lock because ``cleanup_all`` may run from a
    signal path while the main flow is registering or removing files.
    A path leaves the registry only after its file is gone.

    Usage:
        with TempFileRegistry() as registry:
            path = registry.create_key_file(key_pair.private_pem)
            ...
    """

    def __init__(self, directory: str | None = None) -> None:
        self._directory = directory
        self._paths: set[Path] = set()
        self._lock = threading.Lock()
        self._log = logger.bind(component="temp_files")

    def __enter__(self) -> "TempFileRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup_all()

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return Path(path) in self._paths  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def register(self, path: Path) -> None:
        with self._lock:
            self._paths.add(Path(path))

    def unregister(self, path: Path) -> None:
        with self._lock:
            self._paths.discard(Path(path))

    def create_key_file(self, private_pem: str) -> Path:
        """Write a private key to a new 0600 temp file and register it."""
        fd, name = tempfile.mkstemp(prefix=KEY_FILE_PREFIX, dir=self._directory)
        path = Path(name)
        # Registered before writing so an interrupt mid-write still removes it
        self.register(path)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(private_pem)
            os.chmod(path, KEY_FILE_MODE)
        except OSError:
            self.remove(path)
            raise

        self._log.debug("temp_files.key.created", path=str(path))
        return path

    def remove(self, path: Path) -> None:
        """Delete a file and drop it from the registry. Safe to call twice."""
        path = Path(path)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        self.unregister(path)
        self._log.debug("temp_files.removed", path=str(path))

    def cleanup_all(self) -> None:
        """Remove every registered file.

        Files that cannot be deleted stay registered and are logged.
        """
        with self._lock:
            paths = list(self._paths)

        for path in paths:
            try:
                self.remove(path)
            except OSError as e:
                self._log.warning(
                    "temp_files.remove_failed", path=str(path), error=str(e)
                )
