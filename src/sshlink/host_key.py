"""
Host identity and the known-hosts trust store.

Provides:
- KeyType: Host key families the session understands
- HostIdentity: Immutable server identity captured during the handshake
- TrustResult: Verification outcome (match, mismatch, not found)
- TrustEntry: One trusted (or revoked) key for one or more host patterns
- TrustStore: Loads, verifies, adds and saves known_hosts entries

OpenSSH-compatible known_hosts format:
- hostname key (for port 22)
- [hostname]:port key (for non-standard ports)
- Hashed hosts (|1|salt|hash) are matched on read and written back verbatim
- @revoked and @cert-authority markers are preserved

Keys are held as raw SSH public key blobs in memory. Base64 is only the
on-disk encoding, so comparisons never depend on how a file was written.
"""
from __future__ import annotations

import base64
import binascii
import fnmatch
import hashlib
import hmac
import logging
import secrets
import struct
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

MARKER_REVOKED = "@revoked"
MARKER_CERT_AUTHORITY = "@cert-authority"
_MARKERS = (MARKER_REVOKED, MARKER_CERT_AUTHORITY)


class KeyType(str, Enum):
    """Host key family."""
    RSA = "rsa"
    DSA = "dsa"
    ECDSA = "ecdsa"
    ED25519 = "ed25519"
    UNKNOWN = "unknown"

    @classmethod
    def from_algorithm(cls, algorithm: str) -> "KeyType":
        """Map an SSH algorithm name (ssh-rsa, ssh-ed25519, ...) to a KeyType."""
        if algorithm == "ssh-rsa":
            return cls.RSA
        if algorithm == "ssh-dss":
            return cls.DSA
        if algorithm.startswith("ecdsa-sha2-"):
            return cls.ECDSA
        if algorithm == "ssh-ed25519":
            return cls.ED25519
        return cls.UNKNOWN


class TrustResult(str, Enum):
    """Result of checking a host identity against the trust store."""
    MATCH = "match"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"


def _blob_algorithm(blob: bytes) -> str:
    """Read the leading algorithm name from an SSH public key blob."""
    if len(blob) < 4:
        return ""
    (length,) = struct.unpack(">I", blob[:4])
    name = blob[4:4 + length]
    if len(name) != length:
        return ""
    try:
        return name.decode("ascii")
    except UnicodeDecodeError:
        return ""


@dataclass(frozen=True)
class HostIdentity:
    """
    Server host key as captured once per TCP connection.

    Attributes:
        key_type: Key family
        key_bytes: Raw SSH public key blob
        fingerprint: SHA-256 digest of key_bytes
        algorithm: SSH algorithm name, used when writing known_hosts
    """
    key_type: KeyType
    key_bytes: bytes
    fingerprint: bytes
    algorithm: str = ""

    @classmethod
    def from_public_blob(cls, blob: bytes) -> "HostIdentity":
        """Build an identity from a raw SSH public key blob."""
        assert isinstance(blob, bytes), f"Expected bytes, got {type(blob)}"
        algorithm = _blob_algorithm(blob)
        return cls(
            key_type=KeyType.from_algorithm(algorithm),
            key_bytes=blob,
            fingerprint=hashlib.sha256(blob).digest(),
            algorithm=algorithm,
        )

    @property
    def fingerprint_sha256(self) -> str:
        """Fingerprint in OpenSSH display form (SHA256:...)."""
        b64 = base64.b64encode(self.fingerprint).decode("ascii").rstrip("=")
        return f"SHA256:{b64}"


def format_host(host: str, port: int = 22) -> str:
    """
    Format host/port as a known_hosts token.

    OpenSSH uses:
    - hostname for port 22
    - [hostname]:port for other ports
    """
    if port == 22:
        return host
    return f"[{host}]:{port}"


def hash_hostname(hostname: str, salt: bytes | None = None) -> str:
    """
    Hash a hostname using OpenSSH's known_hosts hashing scheme.

    OpenSSH uses HMAC-SHA1 with a random 20-byte salt, stored as:
    |1|<base64-salt>|<base64-hash>
    """
    if salt is None:
        salt = secrets.token_bytes(20)
    mac = hmac.new(salt, hostname.encode("utf-8"), hashlib.sha1)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    hash_b64 = base64.b64encode(mac.digest()).decode("ascii")
    return f"|1|{salt_b64}|{hash_b64}"


def _check_hashed_hostname(pattern: str, hostname: str) -> bool:
    parts = pattern.split("|")
    if len(parts) != 4:
        return False

    try:
        salt = base64.b64decode(parts[2])
        stored_hash = base64.b64decode(parts[3])
    except (ValueError, binascii.Error):
        return False

    mac = hmac.new(salt, hostname.encode("utf-8"), hashlib.sha1)
    return hmac.compare_digest(stored_hash, mac.digest())


def _pattern_matches(pattern: str, hostname: str) -> bool:
    if pattern.startswith("|1|"):
        return _check_hashed_hostname(pattern, hostname)
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(hostname.lower(), pattern.lower())
    return pattern.lower() == hostname.lower()


@dataclass
class TrustEntry:
    """
    One known_hosts record.

    Attributes:
        patterns: Host tokens this entry applies to (plain, bracketed or hashed)
        key_type: Key family
        key_bytes: Raw SSH public key blob
        algorithm: SSH algorithm name as written in the file
        marker: None, "@revoked" or "@cert-authority"
        comment: Trailing comment, preserved on save
    """
    patterns: tuple[str, ...]
    key_type: KeyType
    key_bytes: bytes
    algorithm: str
    marker: str | None = None
    comment: str = ""

    def __post_init__(self) -> None:
        assert self.patterns, "TrustEntry needs at least one host pattern"
        assert self.marker is None or self.marker in _MARKERS, (
            f"Unknown marker {self.marker!r}"
        )

    @property
    def hostname(self) -> str:
        """Primary host pattern."""
        return self.patterns[0]

    def matches(self, hostname: str) -> bool:
        """
        Check whether hostname is covered by this entry.

        A negated pattern (!pattern) that matches excludes the host even if
        another pattern on the same line includes it.
        """
        matched = False
        for pattern in self.patterns:
            if pattern.startswith("!"):
                if _pattern_matches(pattern[1:], hostname):
                    return False
            elif _pattern_matches(pattern, hostname):
                matched = True
        return matched

    def to_line(self) -> str:
        """Serialise to a known_hosts line (without newline)."""
        parts = []
        if self.marker:
            parts.append(self.marker)
        parts.append(",".join(self.patterns))
        parts.append(self.algorithm)
        parts.append(base64.b64encode(self.key_bytes).decode("ascii"))
        if self.comment:
            parts.append(self.comment)
        return " ".join(parts)

    @classmethod
    def from_line(cls, line: str) -> "TrustEntry | None":
        """
        Parse a single known_hosts line.

        Known_hosts format:
        [marker] hostname[,hostname2] key_type key_data [comment]

        Returns:
            TrustEntry or None if the line is malformed
        """
        marker = None
        if line.startswith("@"):
            head = line.split(None, 1)
            if head[0] not in _MARKERS or len(head) < 2:
                return None
            marker, line = head

        parts = line.split(None, 3)
        if len(parts) < 3:
            return None

        hosts, algorithm, key_data = parts[:3]
        comment = parts[3].strip() if len(parts) > 3 else ""

        try:
            key_bytes = base64.b64decode(key_data, validate=True)
        except (ValueError, binascii.Error):
            return None
        if not key_bytes:
            return None

        patterns = tuple(h for h in hosts.split(",") if h)
        if not patterns:
            return None

        return cls(
            patterns=patterns,
            key_type=KeyType.from_algorithm(algorithm),
            key_bytes=key_bytes,
            algorithm=algorithm,
            marker=marker,
            comment=comment,
        )


@dataclass
class TrustStore:
    """
    In-memory known_hosts store.

    Pure data operations: no networking and never suspends, so the session
    can consult it from inside the handshake.

    Usage:
        store = TrustStore()
        store.load(Path("~/.ssh/known_hosts").expanduser())
        result = store.verify(format_host(host, port), identity)
        if result == TrustResult.NOT_FOUND:
            store.add(format_host(host, port), identity)
            store.save(path)
    """
    hash_hostnames: bool = False
    _entries: list[TrustEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, hostname: object) -> bool:
        if not isinstance(hostname, str):
            return False
        return any(e.matches(hostname) for e in self._entries)

    def entries(self) -> list[TrustEntry]:
        """Return all entries (copy)."""
        return list(self._entries)

    def clear(self) -> None:
        """Drop all entries."""
        self._entries.clear()

    def load(self, path: Path | str) -> bool:
        """
        Parse a known_hosts file and append its entries.

        Blank lines and comments are ignored, malformed lines are skipped.

        Returns:
            False if the file is missing or unreadable
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.debug("Cannot read known_hosts %s: %s", path, e)
            return False

        skipped = 0
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            entry = TrustEntry.from_line(line)
            if entry is None:
                skipped += 1
                continue
            self._entries.append(entry)

        if skipped:
            logger.debug("Skipped %d malformed lines in %s", skipped, path)
        return True

    def save(self, path: Path | str) -> bool:
        """
        Write all entries in known_hosts format.

        Creates the parent directory (mode 0700) if needed.

        Returns:
            False if the file cannot be written
        """
        path = Path(path)
        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                for entry in self._entries:
                    f.write(entry.to_line() + "\n")
        except OSError as e:
            logger.warning("Cannot write known_hosts %s: %s", path, e)
            return False
        return True

    def add(self, hostname: str, identity: HostIdentity) -> bool:
        """
        Trust identity for hostname.

        Replaces any existing unmarked entry for the same hostname and key
        type. Lines that list several hosts keep their other hosts.

        Returns:
            False if the identity's key type is UNKNOWN
        """
        if identity.key_type == KeyType.UNKNOWN:
            return False

        kept: list[TrustEntry] = []
        for entry in self._entries:
            if (
                entry.marker is None
                and entry.key_type == identity.key_type
                and entry.matches(hostname)
            ):
                remaining = tuple(
                    p for p in entry.patterns if not _pattern_matches(p, hostname)
                )
                if remaining:
                    entry.patterns = remaining
                    kept.append(entry)
                continue
            kept.append(entry)

        token = hash_hostname(hostname) if self.hash_hostnames else hostname
        kept.append(TrustEntry(
            patterns=(token,),
            key_type=identity.key_type,
            key_bytes=identity.key_bytes,
            algorithm=identity.algorithm or identity.key_type.value,
        ))
        self._entries = kept
        return True

    def verify(self, hostname: str, identity: HostIdentity) -> TrustResult:
        """
        Check identity against the entries for hostname and its key type.

        A revoked entry holding the same key yields MISMATCH. Certificate
        authority entries are not consulted.
        """
        candidates = [
            e for e in self._entries
            if e.marker != MARKER_CERT_AUTHORITY
            and e.key_type == identity.key_type
            and e.matches(hostname)
        ]
        if not candidates:
            return TrustResult.NOT_FOUND

        for entry in candidates:
            if entry.marker == MARKER_REVOKED and entry.key_bytes == identity.key_bytes:
                return TrustResult.MISMATCH

        for entry in candidates:
            if entry.marker is None and entry.key_bytes == identity.key_bytes:
                return TrustResult.MATCH

        return TrustResult.MISMATCH
