"""Container header format and protocol constants."""

from __future__ import annotations

import struct
from dataclasses import dataclass

# ============================================================================
#  Protocol constants
# ============================================================================
MAGIC = b"VGL1"
MAGIC_LEN = 4

SALT_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits (ChaCha20-Poly1305)
KEY_SIZE = 32  # 256 bits
HMAC_SIZE = 32  # 256 bits

#  version(2) + counter(4) + salt(32) + created(8) + modified(8)
#  + kdf_algo(1) + kdf_ver(1) + kdf_time(4) + kdf_mem(4) + kdf_par(1)
#  + reserved(2)  = 67 bytes
HEADER_FMT = ">HI32sQdBBIIBH"
HEADER_SIZE = struct.calcsize(HEADER_FMT)
PROTOCOL_VERSION = 1

# KDF algorithm IDs
KDF_ARGON2ID = 0
KDF_VERSION_19 = 0x13  # Argon2 v19 (current)

PAYLOAD_OFFSET = MAGIC_LEN + HEADER_SIZE + HMAC_SIZE


# ============================================================================
#  ContainerHeader (self-descriptive KDF parameters)
# ============================================================================
@dataclass
class ContainerHeader:
    version: int
    counter: int
    salt: bytes
    created: float
    modified: float
    kdf_algorithm: int  # KDF_ARGON2ID
    kdf_version: int  # KDF_VERSION_19
    kdf_time_cost: int
    kdf_memory_cost: int  # KiB
    kdf_parallelism: int
    reserved: int = 0
    hmac: bytes = b"\x00" * HMAC_SIZE

    def pack(self) -> bytes:
        """Header bytes without magic and HMAC (the authenticated part)."""
        return struct.pack(
            HEADER_FMT,
            self.version,
            self.counter,
            self.salt,
            int(self.created),
            self.modified,
            self.kdf_algorithm,
            self.kdf_version,
            self.kdf_time_cost,
            self.kdf_memory_cost,
            self.kdf_parallelism,
            self.reserved,
        )

    def to_bytes(self) -> bytes:
        return self.pack() + self.hmac

    @classmethod
    def from_bytes(cls, data: bytes) -> ContainerHeader:
        if len(data) < HEADER_SIZE + HMAC_SIZE:
            raise ValueError("Invalid container header")
        (
            version,
            counter,
            salt,
            created,
            modified,
            kdf_algo,
            kdf_ver,
            kdf_time,
            kdf_mem,
            kdf_par,
            reserved,
        ) = struct.unpack(HEADER_FMT, data[:HEADER_SIZE])
        return cls(
            version=version,
            counter=counter,
            salt=salt,
            created=float(created),
            modified=modified,
            kdf_algorithm=kdf_algo,
            kdf_version=kdf_ver,
            kdf_time_cost=kdf_time,
            kdf_memory_cost=kdf_mem,
            kdf_parallelism=kdf_par,
            reserved=reserved,
            hmac=data[HEADER_SIZE : HEADER_SIZE + HMAC_SIZE],
        )

    def get_kdf_params(self) -> dict:
        """Extract KDF parameters from header for key derivation."""
        return {
            "time_cost": self.kdf_time_cost,
            "memory_cost": self.kdf_memory_cost,
            "parallelism": self.kdf_parallelism,
        }


def parse_header(data: bytes) -> ContainerHeader:
    """Parse the container header from raw bytes (including the magic)."""
    if len(data) < MAGIC_LEN or data[:MAGIC_LEN] != MAGIC:
        raise ValueError("Unrecognised container format")
    return ContainerHeader.from_bytes(data[MAGIC_LEN:])


def is_container(data: bytes) -> bool:
    return data[:MAGIC_LEN] == MAGIC and len(data) >= PAYLOAD_OFFSET
