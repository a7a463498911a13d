"""
Reversible transforms applied to serialized snapshots before storage.

Encoding compresses first (zlib) and then encrypts (Fernet); decoding runs the
exact inverse. The stored form is always text: a Fernet token when encrypted,
base64 of the compressed bytes when only compressed, or the plain document
when no transform is configured.
"""
import base64
import binascii
import zlib
from itertools import product
from typing import Iterable, Tuple

from cryptography.fernet import Fernet, InvalidToken

from .errors import TransformError
from .models import Compression, SnapshotConfig

COMPRESSION_LEVELS = {
    Compression.BASIC: 6,
    Compression.HIGH: 9,
}


def generate_key() -> bytes:
    return Fernet.generate_key()


class TransformPipeline:
    def __init__(self, encryption_key: bytes | str | None = None):
        self.fernet = Fernet(encryption_key) if encryption_key else None

    def _require_fernet(self) -> Fernet:
        if self.fernet is None:
            raise TransformError("Encryption is enabled but no encryption key was configured")
        return self.fernet

    def encode(self, plain: str, config: SnapshotConfig) -> str:
        compressed = config.compression != Compression.NONE
        if not compressed and not config.encryption:
            return plain

        data = plain.encode("utf-8")
        if compressed:
            data = zlib.compress(data, COMPRESSION_LEVELS[config.compression])
        if config.encryption:
            return self._require_fernet().encrypt(data).decode("ascii")
        return base64.b64encode(data).decode("ascii")

    def decode(self, encoded: str, config: SnapshotConfig) -> str:
        return self._decode(encoded, config.compression != Compression.NONE, config.encryption)

    def _decode(self, encoded: str, compressed: bool, encrypted: bool) -> str:
        if not compressed and not encrypted:
            return encoded

        try:
            raw = encoded.encode("ascii")
        except UnicodeEncodeError as e:
            raise TransformError(f"Encoded snapshot contains non-ASCII data: {e}") from e

        if encrypted:
            try:
                data = self._require_fernet().decrypt(raw)
            except InvalidToken as e:
                raise TransformError("Snapshot could not be decrypted (invalid token or wrong key)") from e
        else:
            try:
                data = base64.b64decode(raw, validate=True)
            except (binascii.Error, ValueError) as e:
                raise TransformError(f"Snapshot is not valid base64: {e}") from e

        if compressed:
            try:
                data = zlib.decompress(data)
            except zlib.error as e:
                raise TransformError(f"Snapshot could not be decompressed: {e}") from e

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TransformError(f"Decoded snapshot is not valid UTF-8: {e}") from e

    def _combinations(self) -> Iterable[Tuple[bool, bool]]:
        # (compressed, encrypted), cheapest first; encrypted forms need a key.
        for encrypted, compressed in product((False, True), repeat=2):
            if encrypted and self.fernet is None:
                continue
            yield compressed, encrypted

    def decode_any(self, encoded: str) -> str:
        """
        Decodes a blob whose transform settings are unknown, such as a file
        produced by an export. Returns the first combination that decodes.
        """
        failures = []
        for compressed, encrypted in self._combinations():
            try:
                plain = self._decode(encoded, compressed, encrypted)
            except TransformError as e:
                failures.append(str(e))
                continue
            if plain.lstrip().startswith("{"):
                return plain
        raise TransformError(
            "Snapshot could not be decoded with any known transform: " + "; ".join(failures)
        )
