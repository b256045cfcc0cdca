#!/usr/bin/env python3
"""FTP session gateway for cpanel_backup."""

import enum
import ftplib
import posixpath
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Dict, List, Optional

from .errors import (
    FTPAuthenticationError,
    FTPConnectionError,
    FTPDeletionError,
    FTPGatewayError,
    FTPListingError,
    FTPTransferError,
    NotLoggedInError,
    PipelineError,
)
from .logger import get_logger
from .pipeline import StreamPipeline, TransferProgress
from .stats import get_stats_tracker
from .utils import join_posix, mask_secret

# "Service not available, closing control connection"
CONNECTION_CLOSED = 421

_LOGIN_OK = {230, 202}
_DELETE_OK = {200, 250}
_MLSD_UNSUPPORTED = {500, 501, 502}
# ftplib decodes strictly; a non-UTF-8 file name raises UnicodeDecodeError
_REPLY_ERRORS = ftplib.all_errors + (UnicodeDecodeError,)
_EPOCH = datetime.fromtimestamp(0, timezone.utc)


@dataclass(frozen=True)
class RemoteFile:
    """Snapshot of one remote file as reported by the server."""
    name: str
    size: int
    modified_at: datetime


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


def _reply_code(reply: object) -> Optional[int]:
    """Return the numeric code at the head of a reply string or ftplib error."""
    head = str(reply)[:3]
    return int(head) if head.isdigit() else None


def _is_positive_completion(code: Optional[int]) -> bool:
    return code is not None and 200 <= code < 300


def parse_modify_fact(value: Optional[str]) -> datetime:
    """Parse an MLSD/MLST/MDTM timestamp (YYYYMMDDHHMMSS[.sss], UTC)."""
    if not value:
        return _EPOCH
    stamp, _, fraction = value.strip().partition(".")
    parsed = datetime.strptime(stamp, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    if fraction.isdigit():
        parsed = parsed.replace(microsecond=int(fraction[:6].ljust(6, "0")))
    return parsed


def _parse_facts(facts: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for fact in facts.split(";"):
        key, sep, value = fact.partition("=")
        if sep:
            out[key.strip().lower()] = value
    return out


def parse_mlst_reply(reply: str) -> RemoteFile:
    """
    Parse a multi-line MLST reply into a RemoteFile.

    The facts line is the one starting with a single space:
        250-Listing /backup-1.tar.gz
         type=file;size=1234;modify=20240101120000; /backup-1.tar.gz
        250 End
    """
    for line in reply.splitlines()[1:]:
        if not line.startswith(" "):
            continue
        facts, _, path = line[1:].partition(" ")
        parsed = _parse_facts(facts)
        return RemoteFile(
            name=posixpath.basename(path.strip()),
            size=int(parsed.get("size", 0)),
            modified_at=parse_modify_fact(parsed.get("modify")),
        )
    raise ValueError(f"no facts line in MLST reply: {reply!r}")


def _create_ssl_context(verify: bool) -> ssl.SSLContext:
    """Create SSL context for explicit FTPS sessions."""
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


class FTPGateway:
    """
    One FTP session with explicit state and a single operation in flight.

    All operations except connect() and login() need an authenticated session
    and raise NotLoggedInError without touching the network otherwise. A 421
    reply from any operation drops the session so the next login() starts from
    a fresh control connection; delete_file() does that re-login itself and
    retries once.
    """

    def __init__(self, host: str, user: str, password: str, port: int = 21,
                 passive: bool = True, use_tls: bool = False, tls_verify: bool = True,
                 timeout: float = 30, blocksize: int = 262144, queue_chunks: int = 64,
                 ftp_factory: Optional[Callable[[], ftplib.FTP]] = None):
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.passive = passive
        self.use_tls = use_tls
        self.tls_verify = tls_verify
        self.timeout = timeout
        self.blocksize = blocksize
        self.queue_chunks = queue_chunks
        self._ftp_factory = ftp_factory or self._create_ftp
        self._ftp: Optional[ftplib.FTP] = None
        self._state = SessionState.DISCONNECTED
        self._logger = get_logger()
        self._stats = get_stats_tracker()

    @classmethod
    def from_config(cls, s: Dict, **kwargs) -> "FTPGateway":
        """Build a gateway from the "ftp" config section."""
        return cls(
            host=s["host"],
            user=s["user"],
            password=s.get("password") or "",
            port=int(s.get("port", 21)),
            passive=bool(s.get("passive", True)),
            use_tls=bool(s.get("tls", False)),
            tls_verify=bool(s.get("tls_verify", True)),
            timeout=s.get("timeout", 30),
            blocksize=int(s.get("blocksize", 262144)),
            queue_chunks=int(s.get("queue_chunks", 64)),
            **kwargs
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def _host_label(self) -> str:
        return f'"{self.host}"'

    def _create_ftp(self) -> ftplib.FTP:
        if self.use_tls:
            return ftplib.FTP_TLS(context=_create_ssl_context(self.tls_verify), timeout=self.timeout)
        return ftplib.FTP(timeout=self.timeout)

    # -- session -------------------------------------------------------------

    def connect(self) -> None:
        if self._state is not SessionState.DISCONNECTED:
            self._logger.debug(f"Ignoring connect(), already connected to {self._host_label}")
            return

        operation = f"Connecting to {self._host_label}"
        self._logger.debug(f"{operation}...", host=self.host, port=self.port, tls=self.use_tls)
        ftp = self._ftp_factory()
        try:
            welcome = ftp.connect(self.host, self.port)
        except _REPLY_ERRORS as e:
            self._close_quietly(ftp)
            self._stats.record_connection_attempt(success=False)
            raise self._failure(operation, FTPConnectionError, e) from e
        self._logger.debug(f"Reply was: {welcome}")

        code = _reply_code(welcome)
        if not _is_positive_completion(code):
            self._close_quietly(ftp)
            self._stats.record_connection_attempt(success=False)
            self._logger.error(f"{operation} failed with reply code {code}", reply_code=code)
            raise FTPConnectionError(f"{operation} failed with reply code {code}", code)

        ftp.set_pasv(self.passive)
        self._ftp = ftp
        self._state = SessionState.CONNECTED
        self._stats.record_connection_attempt(success=True)
        self._logger.info(f"{operation} successful")

    def login(self) -> None:
        if self._state is SessionState.AUTHENTICATED:
            self._logger.info(f"Ignoring login call, already logged on to {self._host_label}")
            return
        if self._state is SessionState.DISCONNECTED:
            self.connect()

        operation = f"Logging in to {self._host_label}"
        self._logger.debug(f'{operation}, user="{self.user}", password "{mask_secret(self.password)}"')
        reply = self._exchange(operation, FTPAuthenticationError,
                               lambda: self._ftp.login(user=self.user, passwd=self.password))
        self._check_result(reply, operation, FTPAuthenticationError,
                           successful=_reply_code(reply) in _LOGIN_OK)

        if self.use_tls:
            reply = self._exchange("Securing data channel", FTPAuthenticationError, self._ftp.prot_p)
            self._check_result(reply, "Securing data channel", FTPAuthenticationError)

        self._state = SessionState.AUTHENTICATED

    def logout(self) -> None:
        if self._state is not SessionState.AUTHENTICATED:
            self._logger.debug(f"Ignoring logout(), not logged in to {self._host_label}")
            return

        operation = f"Logout from {self._host_label}"
        self._logger.debug(f"{operation}...")
        try:
            reply = self._exchange(operation, FTPGatewayError, self._ftp.quit)
            self._check_result(reply, operation, FTPGatewayError)
        finally:
            self.close()

    def close(self) -> None:
        """Drop the control connection without a QUIT exchange."""
        if self._ftp is not None:
            self._close_quietly(self._ftp)
        self._ftp = None
        self._state = SessionState.DISCONNECTED

    # -- queries -------------------------------------------------------------

    def list_directory(self, path: str) -> List[RemoteFile]:
        operation = f'Listing directory "{path}"'
        self._assert_logged_in(operation)
        self._logger.debug(operation)

        try:
            entries = list(self._ftp.mlsd(path))
        except ftplib.error_perm as e:
            if _reply_code(e) not in _MLSD_UNSUPPORTED:
                raise self._failure(operation, FTPListingError, e) from e
            self._logger.debug(f"MLSD not supported ({e}), falling back to NLST")
            return self._list_with_nlst(path, operation)
        except _REPLY_ERRORS as e:
            raise self._failure(operation, FTPListingError, e) from e

        self._logger.debug(f"Reply was: {self._ftp.lastresp}")
        self._check_result(self._ftp.lastresp, operation, FTPListingError)

        files = []
        for name, facts in entries:
            if facts.get("type", "file").lower() != "file":
                continue
            try:
                files.append(RemoteFile(
                    name=name,
                    size=int(facts.get("size", 0)),
                    modified_at=parse_modify_fact(facts.get("modify")),
                ))
            except ValueError as e:
                self._logger.warning(f"Skipping unparsable listing entry {name}: {e}", path=path)
        return files

    def _list_with_nlst(self, path: str, operation: str) -> List[RemoteFile]:
        names = self._exchange(operation, FTPListingError, lambda: self._ftp.nlst(path))
        files = []
        for raw in names:
            name = posixpath.basename(raw)
            full = join_posix(path, name)
            try:
                files.append(self._stat_file(full))
            except ftplib.error_perm as e:
                # Directories have no MDTM/SIZE
                self._logger.debug(f"Skipping {full}: {e}")
            except _REPLY_ERRORS as e:
                raise self._failure(operation, FTPListingError, e) from e
            except ValueError as e:
                self._logger.warning(f"Skipping unparsable listing entry {name}: {e}", path=path)
        self._logger.info(f"{operation} successful")
        return files

    def _stat_file(self, path: str) -> RemoteFile:
        """Build a RemoteFile from MDTM and SIZE, for servers without MLSD/MLST."""
        mdtm = self._ftp.sendcmd(f"MDTM {path}")
        self._logger.debug(f"Reply was: {mdtm}")
        size = self._ftp.size(path)
        return RemoteFile(
            name=posixpath.basename(path),
            size=int(size or 0),
            modified_at=parse_modify_fact(mdtm[4:]),
        )

    def get_file_metadata(self, path: str) -> RemoteFile:
        operation = f'Mlisting file "{path}"'
        self._assert_logged_in(operation)
        self._logger.debug(operation)

        try:
            reply = self._ftp.sendcmd(f"MLST {path}")
        except ftplib.error_perm as e:
            if _reply_code(e) not in _MLSD_UNSUPPORTED:
                raise self._failure(operation, FTPListingError, e) from e
            self._logger.debug(f"MLST not supported ({e}), falling back to MDTM and SIZE")
            return self._stat_with_fallback(path, operation)
        except _REPLY_ERRORS as e:
            raise self._failure(operation, FTPListingError, e) from e
        self._logger.debug(f"Reply was: {reply}")
        self._check_result(reply, operation, FTPListingError)
        try:
            return parse_mlst_reply(reply)
        except ValueError as e:
            self._logger.error(f"{operation} failed because of {e}")
            raise FTPListingError(f"{operation} failed: {e}", _reply_code(reply)) from e

    def _stat_with_fallback(self, path: str, operation: str) -> RemoteFile:
        try:
            info = self._stat_file(path)
        except _REPLY_ERRORS as e:
            raise self._failure(operation, FTPListingError, e) from e
        except ValueError as e:
            self._logger.error(f"{operation} failed because of {e}")
            raise FTPListingError(f"{operation} failed: {e}") from e
        self._logger.info(f"{operation} successful")
        return info

    # -- transfer ------------------------------------------------------------

    def download_file(self, path: str, sink: BinaryIO,
                      progress_callback: Optional[Callable[[int], None]] = None,
                      expected_total_bytes: int = 0) -> int:
        """
        Stream a remote file into sink.

        progress_callback receives the percentage of expected_total_bytes
        received from the network so far, once per data block. Returns the
        number of bytes written to sink.
        """
        operation = f'Downloading "{path}"'
        self._assert_logged_in(operation)

        setup = "Setting file type to binary"
        self._logger.debug(setup)
        reply = self._exchange(setup, FTPTransferError, lambda: self._ftp.voidcmd("TYPE I"))
        self._check_result(reply, setup, FTPTransferError)

        self._logger.debug(operation, expected_bytes=expected_total_bytes)
        pipeline = StreamPipeline(sink, TransferProgress(expected_total_bytes), max_chunks=self.queue_chunks)
        pipeline.start()
        sink_error: List[BaseException] = []

        def _on_block(block: bytes) -> None:
            try:
                snapshot = pipeline.write(block)
            except (PipelineError, OSError) as e:
                sink_error.append(e)
                raise
            if progress_callback is not None:
                progress_callback(snapshot.percentage)

        try:
            reply = self._ftp.retrbinary(f"RETR {path}", _on_block, blocksize=self.blocksize)
        except BaseException as e:
            pipeline.abort()
            if sink_error:
                # Control channel still expects the transfer reply; the session is unusable
                self._invalidate_session()
                self._logger.error(f"{operation} failed because writing the local copy failed: {sink_error[0]}")
                raise FTPTransferError(f"{operation} failed: cannot write local copy: {sink_error[0]}") from e
            if isinstance(e, _REPLY_ERRORS):
                raise self._failure(operation, FTPTransferError, e) from e
            raise
        self._logger.debug(f"Reply was: {reply}")

        try:
            drained = pipeline.close()
        except (PipelineError, OSError) as e:
            self._logger.error(f"{operation} failed because writing the local copy failed: {e}")
            raise FTPTransferError(f"{operation} failed: cannot write local copy: {e}") from e

        self._check_result(reply, operation, FTPTransferError)
        return drained

    def delete_file(self, path: str) -> None:
        """Delete a remote file, logging in again and retrying once after a 421."""
        self._delete_file(path, is_retry=False)

    def _delete_file(self, path: str, is_retry: bool) -> None:
        operation = f'Deleting "{path}"'
        self._assert_logged_in(operation)
        self._logger.debug(operation)

        try:
            reply = self._ftp.sendcmd(f"DELE {path}")
        except _REPLY_ERRORS as e:
            if not is_retry and isinstance(e, ftplib.Error) and _reply_code(e) == CONNECTION_CLOSED:
                self._logger.warning(f"{operation} hit a closed connection, logging in again",
                                     reply_code=CONNECTION_CLOSED)
                self._invalidate_session()
                try:
                    self.login()
                except FTPGatewayError as login_error:
                    raise FTPDeletionError(f"{operation} failed: re-login failed: {login_error}",
                                           login_error.reply_code) from login_error
                self._delete_file(path, is_retry=True)
                return
            raise self._failure(operation, FTPDeletionError, e) from e

        self._logger.debug(f"Reply was: {reply}")
        self._check_result(reply, operation, FTPDeletionError,
                           successful=_reply_code(reply) in _DELETE_OK)

    # -- helpers -------------------------------------------------------------

    def _assert_logged_in(self, operation: str) -> None:
        if self._state is not SessionState.AUTHENTICATED or self._ftp is None:
            self._logger.error(f"{operation} failed because we are not logged in.")
            raise NotLoggedInError(f"You are not logged in to {self._host_label}")

    def _exchange(self, operation: str, error_cls, action: Callable[[], object]):
        """Run one protocol exchange, translating ftplib failures into error_cls."""
        try:
            reply = action()
        except _REPLY_ERRORS as e:
            raise self._failure(operation, error_cls, e) from e
        self._logger.debug(f"Reply was: {reply}")
        return reply

    def _failure(self, operation: str, error_cls, cause: BaseException) -> FTPGatewayError:
        if isinstance(cause, ftplib.Error):
            code = _reply_code(cause)
            message = f"{operation} failed with reply code {code}" if code else f"{operation} failed: {cause}"
            if code == CONNECTION_CLOSED:
                self._invalidate_session()
        else:
            # EOF, socket or decode error: the control connection is out of sync
            code = None
            message = f"{operation} failed because of {cause!r}"
            self._invalidate_session()
        self._logger.error(message, reply_code=code, error=str(cause))
        return error_cls(message, code)

    def _check_result(self, reply: object, operation: str, error_cls, successful: bool = True) -> None:
        code = _reply_code(reply)
        if _is_positive_completion(code):
            if successful:
                self._logger.info(f"{operation} successful")
                return
            self._logger.error(f"{operation} failed", reply_code=code, reply=str(reply))
            raise error_cls(f"{operation} failed ({str(reply).strip()})", code)

        self._logger.error(f"{operation} failed with reply code {code}", reply_code=code)
        if code == CONNECTION_CLOSED:
            self._invalidate_session()
        raise error_cls(f"{operation} failed with reply code {code}", code)

    def _invalidate_session(self) -> None:
        if self._state is SessionState.DISCONNECTED and self._ftp is None:
            return
        self._logger.warning(f"Connection to {self._host_label} lost, session invalidated")
        self.close()

    def _close_quietly(self, ftp: ftplib.FTP) -> None:
        try:
            ftp.close()
        except OSError as e:
            self._logger.debug(f"Error closing FTP connection: {e}")
