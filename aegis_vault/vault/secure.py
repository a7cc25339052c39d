"""
Fixed-size secret buffers with explicit wiping.

Security Note:
    Python cannot guarantee that no other copy of a key exists (the AEAD
    backend keeps its own). Wiping removes the engine's long-lived copy so a
    locked vault holds no derived key bytes of its own.
"""
import os

from ..exceptions import VaultLocked


class SecretBytes:
    """Mutable key buffer that is overwritten with random bytes on wipe."""

    __slots__ = ("_data", "_wiped")

    def __init__(self, data: bytes):
        self._wiped = False
        self._data = bytearray(data)
        if isinstance(data, bytearray):
            data[:] = bytes(len(data))

    def expose(self) -> bytes:
        """Return a copy of the key bytes.

        Raises:
            VaultLocked: If the buffer was already wiped.
        """
        if self._wiped:
            raise VaultLocked("Key material has been wiped")
        return bytes(self._data)

    def wipe(self) -> None:
        """Overwrite the buffer in place with random data. Idempotent."""
        if self._wiped:
            return
        self._data[:] = os.urandom(len(self._data))
        self._wiped = True

    @property
    def wiped(self) -> bool:
        return self._wiped

    def __len__(self) -> int:
        return len(self._data)

    def __enter__(self) -> "SecretBytes":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __del__(self):
        # __init__ may have failed before the slots were populated
        if hasattr(self, "_data"):
            self.wipe()

    def __repr__(self) -> str:
        return f"<SecretBytes len={len(self._data)} wiped={self._wiped}>"
