"""
Unit tests for the FTP gateway.

A scripted FakeFTP stands in for ftplib.FTP so no server is needed.
"""

import ftplib
import io
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from cpanel_backup.errors import (
    FTPAuthenticationError,
    FTPConnectionError,
    FTPDeletionError,
    FTPListingError,
    FTPTransferError,
    NotLoggedInError,
)
from cpanel_backup.ftp_gateway import FTPGateway, SessionState, parse_mlst_reply, parse_modify_fact
from cpanel_backup.orchestrator import BackupOrchestrator, ErrorKind


class FakeFTP:
    """Records calls and answers from scripted replies (str, or Exception to raise)."""

    def __init__(self, welcome="220 Welcome", login_reply="230 Logged in", data=b"", chunk=1000):
        self.welcome = welcome
        self.login_reply = login_reply
        self.data = data
        self.chunk = chunk
        self.calls = []
        self.lastresp = ""
        self.pasv = None
        self.closed = False
        self.mlsd_result = []
        self.nlst_result = []
        self.sizes = {}
        self.responses = {}

    def _answer(self, reply):
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def connect(self, host, port):
        self.calls.append(("connect", host, port))
        self.closed = False
        return self._answer(self.welcome)

    def set_pasv(self, value):
        self.pasv = value

    def login(self, user, passwd):
        self.calls.append(("login", user))
        return self._answer(self.login_reply)

    def quit(self):
        self.calls.append(("quit",))
        return "221 Goodbye"

    def close(self):
        self.closed = True

    def mlsd(self, path):
        self.calls.append(("mlsd", path))
        result = self._answer(self.mlsd_result)
        self.lastresp = "226"
        return iter(result)

    def nlst(self, path):
        self.calls.append(("nlst", path))
        return list(self.nlst_result)

    def size(self, name):
        return self._answer(self.sizes[name])

    def sendcmd(self, cmd):
        self.calls.append(("sendcmd", cmd))
        verb = cmd.split(" ", 1)[0]
        return self._answer(self.responses[verb].pop(0))

    def voidcmd(self, cmd):
        self.calls.append(("voidcmd", cmd))
        replies = self.responses.get("TYPE")
        if replies:
            return self._answer(replies.pop(0))
        return "200 Type set to I"

    def retrbinary(self, cmd, callback, blocksize=8192):
        self.calls.append(("retrbinary", cmd))
        replies = self.responses.get("RETR")
        if replies:
            return self._answer(replies.pop(0))
        for i in range(0, len(self.data), self.chunk):
            callback(self.data[i:i + self.chunk])
        return "226 Transfer complete"


@pytest.fixture
def fake():
    return FakeFTP()


@pytest.fixture
def gateway(fake):
    return FTPGateway("ftp.example.com", "me", "secret", port=2121, ftp_factory=lambda: fake)


@pytest.fixture
def logged_in(gateway):
    gateway.login()
    return gateway


def test_connect_uses_passive_mode(gateway, fake):
    gateway.connect()

    assert fake.calls == [("connect", "ftp.example.com", 2121)]
    assert fake.pasv is True
    assert gateway.state is SessionState.CONNECTED


def test_connect_twice_is_a_noop(gateway, fake):
    gateway.connect()
    gateway.connect()

    assert [c for c in fake.calls if c[0] == "connect"] == [("connect", "ftp.example.com", 2121)]


def test_login_connects_first(gateway, fake):
    gateway.login()

    assert [c[0] for c in fake.calls] == ["connect", "login"]
    assert gateway.state is SessionState.AUTHENTICATED


def test_login_twice_is_a_noop(logged_in, fake):
    calls_before = list(fake.calls)

    logged_in.login()
    logged_in.connect()

    assert fake.calls == calls_before


def test_connect_rejects_non_success_welcome(fake, gateway):
    fake.welcome = "120 Service ready in 10 minutes"

    with pytest.raises(FTPConnectionError) as exc_info:
        gateway.connect()

    assert exc_info.value.reply_code == 120
    assert fake.closed
    assert gateway.state is SessionState.DISCONNECTED


def test_connect_socket_error_closes_session(fake, gateway):
    fake.welcome = ConnectionRefusedError("refused")

    with pytest.raises(FTPConnectionError):
        gateway.connect()

    assert fake.closed
    assert gateway.state is SessionState.DISCONNECTED


def test_login_rejected_credentials(fake, gateway):
    fake.login_reply = ftplib.error_perm("530 Login incorrect")

    with pytest.raises(FTPAuthenticationError) as exc_info:
        gateway.login()

    assert exc_info.value.reply_code == 530
    assert gateway.state is SessionState.CONNECTED


def test_login_success_code_with_failure_flag(fake, gateway):
    fake.login_reply = "200 Command okay"

    with pytest.raises(FTPAuthenticationError):
        gateway.login()

    assert gateway.state is not SessionState.AUTHENTICATED


@pytest.mark.parametrize("call", [
    lambda g: g.list_directory("/"),
    lambda g: g.get_file_metadata("/backup-1.tar.gz"),
    lambda g: g.download_file("/backup-1.tar.gz", io.BytesIO()),
    lambda g: g.delete_file("/backup-1.tar.gz"),
])
def test_operations_require_login(gateway, fake, call):
    with pytest.raises(NotLoggedInError):
        call(gateway)

    assert fake.calls == []


def test_list_directory_parses_mlsd(logged_in, fake):
    fake.mlsd_result = [
        (".", {"type": "cdir"}),
        ("public_html", {"type": "dir", "modify": "20240101000000"}),
        ("backup-1.tar.gz", {"type": "file", "size": "1234", "modify": "20240102030405"}),
        ("notes.txt", {"type": "file", "size": "10", "modify": "20231231235959.250"}),
    ]

    files = logged_in.list_directory("/")

    assert [f.name for f in files] == ["backup-1.tar.gz", "notes.txt"]
    assert files[0].size == 1234
    assert files[0].modified_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert files[1].modified_at.microsecond == 250000


def test_list_directory_falls_back_to_nlst(logged_in, fake):
    fake.mlsd_result = ftplib.error_perm("500 Unknown command")
    fake.nlst_result = ["/backup-1.tar.gz", "/public_html"]
    fake.sizes = {"/backup-1.tar.gz": 77}
    fake.responses["MDTM"] = ["213 20240105060708", ftplib.error_perm("550 Not a plain file")]

    files = logged_in.list_directory("/")

    assert len(files) == 1
    assert files[0].name == "backup-1.tar.gz"
    assert files[0].size == 77
    assert files[0].modified_at == datetime(2024, 1, 5, 6, 7, 8, tzinfo=timezone.utc)


def test_list_directory_error(logged_in, fake):
    fake.mlsd_result = ftplib.error_perm("550 Permission denied")

    with pytest.raises(FTPListingError) as exc_info:
        logged_in.list_directory("/")

    assert exc_info.value.reply_code == 550
    assert logged_in.state is SessionState.AUTHENTICATED


def test_connection_closed_reply_invalidates_session(logged_in, fake):
    fake.mlsd_result = ftplib.error_temp("421 Timeout, closing control connection")

    with pytest.raises(FTPListingError):
        logged_in.list_directory("/")

    assert logged_in.state is SessionState.DISCONNECTED
    with pytest.raises(NotLoggedInError):
        logged_in.list_directory("/")

    # Next login opens a new control connection
    logged_in.login()
    assert [c[0] for c in fake.calls].count("connect") == 2


def test_get_file_metadata_uses_mlst(logged_in, fake):
    fake.responses["MLST"] = [
        "250-Listing /backup-1.tar.gz\n"
        " type=file;size=5000;modify=20240101120000; /backup-1.tar.gz\n"
        "250 End"
    ]

    info = logged_in.get_file_metadata("/backup-1.tar.gz")

    assert ("sendcmd", "MLST /backup-1.tar.gz") in fake.calls
    assert info.name == "backup-1.tar.gz"
    assert info.size == 5000


def test_get_file_metadata_unparsable_reply(logged_in, fake):
    fake.responses["MLST"] = ["250 End"]

    with pytest.raises(FTPListingError):
        logged_in.get_file_metadata("/backup-1.tar.gz")


def latin1_name_error():
    return UnicodeDecodeError("utf-8", b"caf\xe9.txt", 3, 4, "invalid continuation byte")


def test_list_directory_undecodable_name(logged_in, fake):
    fake.mlsd_result = latin1_name_error()

    with pytest.raises(FTPListingError) as exc_info:
        logged_in.list_directory("/")

    assert exc_info.value.reply_code is None
    assert logged_in.state is SessionState.DISCONNECTED


def test_get_file_metadata_undecodable_reply(logged_in, fake):
    fake.responses["MLST"] = [latin1_name_error()]

    with pytest.raises(FTPListingError):
        logged_in.get_file_metadata("/backup-1.tar.gz")


def test_undecodable_listing_ends_run_with_result(fake, gateway, make_config, clock):
    fake.mlsd_result = latin1_name_error()
    orchestrator = BackupOrchestrator(
        make_config(), gateway=gateway, trigger=lambda c: None, verifier=lambda p: True,
        clock=clock, sleep=clock.sleep,
    )

    result = orchestrator.run()

    assert not result.ok
    assert result.error.kind is ErrorKind.LISTING
    assert gateway.state is SessionState.DISCONNECTED


def test_server_without_mlsd_lists_and_reads_metadata(logged_in, fake):
    fake.mlsd_result = ftplib.error_perm("500 Unknown command")
    fake.nlst_result = ["backup-1.tar.gz"]
    fake.sizes = {"/backup-1.tar.gz": 5000}
    fake.responses["MDTM"] = ["213 20240105060708", "213 20240105060709"]
    fake.responses["MLST"] = [ftplib.error_perm("500 Unknown command")]

    files = logged_in.list_directory("/")
    info = logged_in.get_file_metadata("/backup-1.tar.gz")

    assert [f.name for f in files] == ["backup-1.tar.gz"]
    assert info.name == "backup-1.tar.gz"
    assert info.size == 5000
    assert info.modified_at == datetime(2024, 1, 5, 6, 7, 9, tzinfo=timezone.utc)
    assert ("sendcmd", "MDTM /backup-1.tar.gz") in fake.calls
    assert logged_in.state is SessionState.AUTHENTICATED


def test_metadata_fallback_failure(logged_in, fake):
    fake.responses["MLST"] = [ftplib.error_perm("502 Command not implemented")]
    fake.responses["MDTM"] = [ftplib.error_perm("550 No such file")]

    with pytest.raises(FTPListingError) as exc_info:
        logged_in.get_file_metadata("/backup-1.tar.gz")

    assert exc_info.value.reply_code == 550


def test_metadata_other_mlst_error_has_no_fallback(logged_in, fake):
    fake.responses["MLST"] = [ftplib.error_perm("550 No such file")]

    with pytest.raises(FTPListingError) as exc_info:
        logged_in.get_file_metadata("/backup-1.tar.gz")

    assert exc_info.value.reply_code == 550
    assert not any(c[1].startswith("MDTM") for c in fake.calls if c[0] == "sendcmd")


def test_nlst_fallback_skips_malformed_mdtm(logged_in, fake):
    fake.mlsd_result = ftplib.error_perm("500 Unknown command")
    fake.nlst_result = ["/odd.tar.gz", "/backup-1.tar.gz"]
    fake.sizes = {"/odd.tar.gz": 1, "/backup-1.tar.gz": 77}
    fake.responses["MDTM"] = ["213 yesterday", "213 20240105060708"]

    files = logged_in.list_directory("/")

    assert [f.name for f in files] == ["backup-1.tar.gz"]


def test_download_streams_into_sink(logged_in, fake):
    fake.data = bytes(range(256)) * 40  # 10,240 bytes
    sink = io.BytesIO()

    count = logged_in.download_file("/backup-1.tar.gz", sink, expected_total_bytes=len(fake.data))

    assert count == len(fake.data)
    assert sink.getvalue() == fake.data
    verbs = [c[0] for c in fake.calls]
    assert verbs.index("voidcmd") < verbs.index("retrbinary")
    assert ("retrbinary", "RETR /backup-1.tar.gz") in fake.calls


def test_download_reports_producer_percentages(logged_in, fake):
    fake.data = b"x" * 10000
    seen = []

    logged_in.download_file("/b.tar.gz", io.BytesIO(), seen.append, expected_total_bytes=10000)

    assert seen == [10, 20, 30, 40, 50, 60, 70, 80, 90, 100]


def test_download_binary_mode_failure_is_its_own_step(logged_in, fake):
    fake.responses["TYPE"] = [ftplib.error_perm("504 Type not implemented")]

    with pytest.raises(FTPTransferError, match="Setting file type to binary"):
        logged_in.download_file("/b.tar.gz", io.BytesIO())

    assert "retrbinary" not in [c[0] for c in fake.calls]


def test_download_failure_reply(logged_in, fake):
    fake.responses["RETR"] = [ftplib.error_perm("550 No such file")]

    with pytest.raises(FTPTransferError, match="Downloading") as exc_info:
        logged_in.download_file("/b.tar.gz", io.BytesIO())

    assert exc_info.value.reply_code == 550


def test_download_sink_failure(logged_in, fake):
    class BrokenSink(io.BytesIO):
        def write(self, data):
            raise OSError("disk full")

    fake.data = b"y" * 50000

    with pytest.raises(FTPTransferError, match="local copy"):
        logged_in.download_file("/b.tar.gz", BrokenSink(), expected_total_bytes=50000)


def test_delete_retries_once_after_connection_closed(logged_in, fake):
    fake.responses["DELE"] = [ftplib.error_temp("421 Connection closed"), "250 Deleted"]

    with patch.object(logged_in, "_invalidate_session", wraps=logged_in._invalidate_session) as invalidate:
        logged_in.delete_file("/backup-1.tar.gz")

    assert invalidate.call_count == 1
    assert [c[0] for c in fake.calls].count("login") == 2
    assert [c for c in fake.calls if c[0] == "sendcmd"] == [("sendcmd", "DELE /backup-1.tar.gz")] * 2
    assert logged_in.state is SessionState.AUTHENTICATED


def test_delete_second_connection_closed_is_fatal(logged_in, fake):
    fake.responses["DELE"] = [ftplib.error_temp("421 Connection closed"),
                              ftplib.error_temp("421 Connection closed")]

    with pytest.raises(FTPDeletionError) as exc_info:
        logged_in.delete_file("/backup-1.tar.gz")

    assert exc_info.value.reply_code == 421


def test_delete_other_error_is_not_retried(logged_in, fake):
    fake.responses["DELE"] = [ftplib.error_perm("550 Permission denied")]

    with pytest.raises(FTPDeletionError):
        logged_in.delete_file("/backup-1.tar.gz")

    assert [c[0] for c in fake.calls].count("login") == 1


def test_delete_success_code_without_deletion(logged_in, fake):
    fake.responses["DELE"] = ["226 Closing data connection"]

    with pytest.raises(FTPDeletionError):
        logged_in.delete_file("/backup-1.tar.gz")


def test_logout(logged_in, fake):
    logged_in.logout()

    assert ("quit",) in fake.calls
    assert logged_in.state is SessionState.DISCONNECTED


def test_parse_mlst_reply():
    info = parse_mlst_reply("250-Start\n Type=file;Size=42;Modify=20240301000000; /home/me/backup-x.tar.gz\n250 End")

    assert info.name == "backup-x.tar.gz"
    assert info.size == 42
    assert info.modified_at == datetime(2024, 3, 1, tzinfo=timezone.utc)


def test_parse_modify_fact_missing():
    assert parse_modify_fact(None) == datetime.fromtimestamp(0, timezone.utc)
