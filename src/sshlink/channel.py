"""
Channel consumers: services that run on top of a ready session.

Provides:
- Channel: Base class receiving the session's DATA_READY notifications
- SFTPChannel: File transfer over asyncssh's SFTP client

A channel attaches to a session and is told, through on_data_ready(),
whenever there may be new data: once right after authentication and again
on every readable event while the session is in CHANNELS_READY. The
session makes no delivery guarantee beyond that.
"""
from __future__ import annotations

import asyncio
import logging
import posixpath
from pathlib import Path
from typing import TYPE_CHECKING, Any

import asyncssh

from sshlink.errors import ChannelError, ErrorContext, ErrorKind

if TYPE_CHECKING:
    from sshlink.connection import SSHSession

logger = logging.getLogger(__name__)


class Channel:
    """
    Base class for channel consumers.

    Usage:
        class Tail(Channel):
            def handle_data_ready(self) -> None:
                ...

        channel = Tail(session)
        await channel.ready()
    """

    def __init__(self, session: "SSHSession | None" = None) -> None:
        self._session: "SSHSession | None" = None
        self.data_ready_count = 0
        if session is not None:
            self.attach(session)

    @property
    def session(self) -> "SSHSession | None":
        return self._session

    def attach(self, session: "SSHSession") -> None:
        """Register with session for DATA_READY notifications."""
        if self._session is session:
            return
        self.detach()
        self._session = session
        session.add_channel(self)

    def detach(self) -> None:
        if self._session is not None:
            self._session.remove_channel(self)
            self._session = None

    def on_data_ready(self) -> None:
        """Called by the session for every DATA_READY event."""
        self.data_ready_count += 1
        self.handle_data_ready()

    def handle_data_ready(self) -> None:
        """Hook for subclasses. Must not block."""

    async def ready(self) -> None:
        """
        Wait until the attached session has reached CHANNELS_READY.

        Raises:
            ChannelError: If the session failed instead
        """
        assert self._session is not None, "Channel is not attached to a session"
        kind = await self._session.wait_ready()
        if kind != ErrorKind.NO_ERROR:
            raise ChannelError(
                f"Session is not ready: {kind.value}",
                ErrorContext(host=self._session.host or None, extra={"kind": kind.value}),
            )


class SFTPChannel(Channel):
    """
    Remote file operations over SFTP.

    Each operation waits for the session to be ready, then runs on a single
    lazily started SFTP client. A client belongs to one connection: after
    the session resets and reconnects a new one is started. asyncssh errors
    are raised as ChannelError.

    Usage:
        sftp = SFTPChannel(session)
        remote = await sftp.send("build.tar.gz", "/srv/releases")
        for name in await sftp.dir("/srv/releases"):
            print(name)
    """

    def __init__(self, session: "SSHSession | None" = None) -> None:
        super().__init__(session)
        self._client: asyncssh.SFTPClient | None = None
        self._client_conn: Any = None
        self._client_lock = asyncio.Lock()

    async def _sftp(self) -> asyncssh.SFTPClient:
        await self.ready()
        async with self._client_lock:
            assert self._session is not None
            conn = self._session.connection
            if conn is None:
                raise ChannelError(
                    "Session has no open connection",
                    self._context(None),
                )
            if self._client is not None and self._client_conn is not conn:
                # The old client went down with the connection it ran on.
                logger.debug("Dropping SFTP client from a previous connection")
                self._client = None
            if self._client is None:
                self._client = await conn.start_sftp_client()
                self._client_conn = conn
                logger.debug("SFTP client started on %s", self._session.host)
            return self._client

    def _context(self, path: str | None, exc: BaseException | None = None) -> ErrorContext:
        session = self._session
        return ErrorContext(
            host=session.host if session else None,
            port=session.port if session else None,
            original_error=str(exc) if exc else None,
            extra={"path": path} if path else {},
        )

    async def _run(self, operation: str, path: str, call: Any) -> Any:
        sftp = await self._sftp()
        try:
            return await call(sftp)
        except (asyncssh.SFTPError, OSError) as e:
            raise ChannelError(f"{operation} {path} failed: {e}", self._context(path, e)) from e

    async def send(self, source: Path | str, dest: str) -> str:
        """
        Upload a local file.

        If dest is an existing remote directory the file keeps its name.

        Returns:
            The remote path written
        """
        source = Path(source)
        if await self.is_dir(dest):
            dest = posixpath.join(dest, source.name)
        await self._run("send", dest, lambda sftp: sftp.put(str(source), dest))
        return dest

    async def get(self, source: str, dest: Path | str, override: bool = False) -> bool:
        """
        Download a remote file.

        Returns:
            False if dest exists and override is False
        """
        dest = Path(dest)
        if dest.is_dir():
            dest = dest / posixpath.basename(source)
        if dest.exists() and not override:
            logger.debug("Not overwriting existing %s", dest)
            return False
        await self._run("get", source, lambda sftp: sftp.get(source, str(dest)))
        return True

    async def mkdir(self, path: str) -> None:
        """Create one remote directory."""
        await self._run("mkdir", path, lambda sftp: sftp.mkdir(path))

    async def mkpath(self, path: str) -> None:
        """Create a remote directory and any missing parents."""
        await self._run("mkpath", path, lambda sftp: sftp.makedirs(path, exist_ok=True))

    async def dir(self, path: str = ".") -> list[str]:
        """List the names in a remote directory (without . and ..)."""
        names = await self._run("dir", path, lambda sftp: sftp.listdir(path))
        return sorted(n for n in names if n not in (".", ".."))

    async def is_dir(self, path: str) -> bool:
        sftp = await self._sftp()
        return await sftp.isdir(path)

    async def is_file(self, path: str) -> bool:
        sftp = await self._sftp()
        return await sftp.isfile(path)

    async def unlink(self, path: str) -> bool:
        """
        Remove a remote file.

        Returns:
            False if the file could not be removed
        """
        sftp = await self._sftp()
        try:
            await sftp.remove(path)
        except asyncssh.SFTPError as e:
            logger.debug("unlink %s failed: %s", path, e)
            return False
        return True

    def close(self) -> None:
        """Stop the SFTP client and detach from the session."""
        if self._client is not None:
            self._client.exit()
            self._client = None
        self._client_conn = None
        self.detach()
