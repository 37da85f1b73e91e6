"""Secure memory management: SecureMemory, FragmentedSecret, KeyObfuscator,
TimedExposure and the ProtectedValue used for secrets inside containers."""

from __future__ import annotations

import ctypes
import hmac
import logging
import platform
import secrets
import threading
from typing import Optional, Union

logger = logging.getLogger("vigil.memory")


# ---------------------------------------------------------------------------
#  SecureMemory
# ---------------------------------------------------------------------------
class SecureMemory:
    """Manages a bytearray in locked (non-swappable) memory with multi-pass wipe."""

    def __init__(self, data: Union[bytes, bytearray, str]):
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._size = len(data)
        self._data = bytearray(data)
        self._locked = False
        self._protect_memory()

    def _protect_memory(self) -> None:
        if self._size == 0:
            return
        try:
            address = ctypes.addressof(ctypes.c_char.from_buffer(self._data))
            if platform.system() == "Windows":
                kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
                if kernel32.VirtualLock(
                    ctypes.c_void_p(address), ctypes.c_size_t(self._size)
                ):
                    self._locked = True
            else:
                libc = ctypes.CDLL(None)
                if libc.mlock(ctypes.c_void_p(address), ctypes.c_size_t(self._size)) == 0:
                    self._locked = True
        except Exception as exc:
            logger.debug("Memory protection unavailable: %s", exc)

    def _unlock_memory(self) -> None:
        try:
            address = ctypes.addressof(ctypes.c_char.from_buffer(self._data))
            if platform.system() == "Windows":
                k32 = ctypes.WinDLL("kernel32", use_last_error=True)
                k32.VirtualUnlock(ctypes.c_void_p(address), ctypes.c_size_t(self._size))
            else:
                libc = ctypes.CDLL(None)
                libc.munlock(ctypes.c_void_p(address), ctypes.c_size_t(self._size))
        except Exception as exc:
            logger.debug("Memory unlock failed: %s", exc)

    # -- public API ---------------------------------------------------------
    def get_bytes(self) -> bytes:
        if not self._data:
            raise ValueError("Memory already cleared")
        return bytes(self._data)

    def clear(self) -> None:
        if not self._data:
            return
        try:
            for pat in (
                bytes([0xFF] * self._size),
                bytes([0x00] * self._size),
                secrets.token_bytes(self._size),
                bytes([0x00] * self._size),
            ):
                self._data[:] = pat
            if self._locked:
                self._unlock_memory()
        finally:
            self._data = bytearray()
            self._size = 0
            self._locked = False

    def __len__(self) -> int:
        return self._size

    def __del__(self):
        self.clear()

    @property
    def is_protected(self) -> bool:
        return self._locked


# ---------------------------------------------------------------------------
#  FragmentedSecret
# ---------------------------------------------------------------------------
class FragmentedSecret:
    """Splits a secret into N XOR-masked fragments."""

    def __init__(self, data: Union[bytes, bytearray, str], parts: int = 3):
        b = data.encode() if isinstance(data, str) else bytes(data)
        masks = [secrets.token_bytes(len(b)) for _ in range(parts - 1)]
        last = bytearray(b)
        for m in masks:
            for i, mb in enumerate(m):
                last[i] ^= mb
        self._parts = [SecureMemory(m) for m in masks] + [SecureMemory(last)]

    def reconstruct(self) -> SecureMemory:
        res = bytearray(self._parts[-1].get_bytes())
        for p in self._parts[:-1]:
            for i, pb in enumerate(p.get_bytes()):
                res[i] ^= pb
        return SecureMemory(res)

    def clear(self):
        for p in self._parts:
            p.clear()
        self._parts = []


# ---------------------------------------------------------------------------
#  KeyObfuscator
# ---------------------------------------------------------------------------
class KeyObfuscator:
    """Keeps a secret obfuscated; reveal only via TimedExposure."""

    def __init__(self, key: SecureMemory):
        self._key: Optional[SecureMemory] = key
        self._mask: Optional[SecureMemory] = None
        self._frags: Optional[FragmentedSecret] = None
        self._obfuscated = False
        self._lock = threading.Lock()

    def obfuscate(self):
        with self._lock:
            if self._obfuscated or self._key is None or len(self._key) == 0:
                return
            kb = self._key.get_bytes()
            mask_b = secrets.token_bytes(len(kb))
            masked = bytearray(a ^ b for a, b in zip(kb, mask_b))
            self._mask = SecureMemory(mask_b)
            self._frags = FragmentedSecret(masked, 3)
            self._key.clear()
            self._key = None
            self._obfuscated = True

    def deobfuscate(self) -> SecureMemory:
        with self._lock:
            if not self._obfuscated:
                return SecureMemory(self._key.get_bytes() if self._key else b"")
            masked_sb = self._frags.reconstruct()
            mask = self._mask.get_bytes()
            plain = bytearray(a ^ b for a, b in zip(masked_sb.get_bytes(), mask))
            masked_sb.clear()
            return SecureMemory(plain)

    def clear(self):
        with self._lock:
            if self._mask:
                self._mask.clear()
            if self._frags:
                self._frags.clear()
            if self._key:
                self._key.clear()
            self._mask = None
            self._frags = None
            self._key = None
            self._obfuscated = False


# ---------------------------------------------------------------------------
#  TimedExposure
# ---------------------------------------------------------------------------
class TimedExposure:
    """Context manager that keeps a secret in the clear only inside the block."""

    def __init__(self, ko: KeyObfuscator):
        self.ko = ko
        self._plain: Optional[SecureMemory] = None

    def __enter__(self) -> SecureMemory:
        self._plain = self.ko.deobfuscate()
        return self._plain

    def __exit__(self, exc_type, exc, tb):
        if self._plain is not None:
            self._plain.clear()
            self._plain = None


# ---------------------------------------------------------------------------
#  ProtectedValue
# ---------------------------------------------------------------------------
class ProtectedValue:
    """A secret field value kept obfuscated in memory (e.g. an entry password)."""

    def __init__(self, data: Union[bytes, bytearray]):
        self._length = len(data)
        self._ko = KeyObfuscator(SecureMemory(data))
        self._ko.obfuscate()

    @classmethod
    def from_string(cls, text: str) -> ProtectedValue:
        return cls(text.encode("utf-8"))

    def get_bytes(self) -> bytes:
        if self._length == 0:
            return b""
        with TimedExposure(self._ko) as sm:
            return sm.get_bytes()

    def get_text(self) -> str:
        return self.get_bytes().decode("utf-8")

    def copy(self) -> ProtectedValue:
        return ProtectedValue(self.get_bytes())

    def clear(self) -> None:
        self._ko.clear()
        self._length = 0

    def __len__(self) -> int:
        return self._length

    def __eq__(self, other):
        if isinstance(other, ProtectedValue):
            return hmac.compare_digest(self.get_bytes(), other.get_bytes())
        if isinstance(other, str):
            return hmac.compare_digest(self.get_bytes(), other.encode("utf-8"))
        return NotImplemented

    __hash__ = None

    def __repr__(self) -> str:
        return f"ProtectedValue(<{self._length} bytes>)"
