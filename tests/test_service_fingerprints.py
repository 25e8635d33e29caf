import asyncio
import json
import logging

import pytest

from hostprobe.core.service_fingerprints import (
    DEFAULT_FINGERPRINTS,
    FingerprintSourceError,
    ServiceFingerprint,
    ServiceFingerprintDB,
)

SSH_BANNER = b"SSH-2.0-OpenSSH_8.9p1 Ubuntu-3\r\n"


def test_defaults_loaded_when_no_source():
    db = ServiceFingerprintDB.load()
    assert db.count == len(DEFAULT_FINGERPRINTS)
    assert 22 in db.ports
    assert db.fingerprints_for(22)[0].name == "SSH"
    assert db.fingerprints_for(1) == ()


@pytest.mark.parametrize("records", [
    [{"name": "X"}],  # port missing
    [{"name": "X", "port": 70000}],  # port out of range
    [{"name": "X", "port": 1, "colour": "blue"}],  # unknown key
    [{"name": "X", "port": 1, "weight": 2.0}],  # weight out of range
    {"name": "X", "port": 1},  # not a list
])
def test_parse_records_rejects_malformed(records):
    with pytest.raises(FingerprintSourceError):
        ServiceFingerprintDB.parse_records(records)


def test_parse_records_rejects_bad_regex():
    with pytest.raises(FingerprintSourceError, match="bad pattern"):
        ServiceFingerprintDB.parse_records([{"name": "X", "port": 1, "banner_pattern": "("}])


def test_malformed_source_falls_back_to_defaults(caplog):
    with caplog.at_level(logging.WARNING, logger="hostprobe"):
        db = ServiceFingerprintDB.load([{"name": "X"}])
    assert db.count == len(DEFAULT_FINGERPRINTS)
    assert "falling back to built-in fingerprints" in caplog.text


def test_missing_file_falls_back_to_defaults(tmp_path):
    db = ServiceFingerprintDB.load(tmp_path / "missing.json")
    assert db.count == len(DEFAULT_FINGERPRINTS)


def test_load_from_file(tmp_path):
    path = tmp_path / "fingerprints.json"
    path.write_text(json.dumps([
        {"name": "Gopher", "protocol": "TCP", "port": 70, "banner_pattern": "^i", "weight": 0.6},
        {"name": "Finger", "port": 79, "description": "finger daemon"},
    ]))
    db = ServiceFingerprintDB.load(str(path))
    assert db.ports == [70, 79]
    assert db.count == 2
    finger = db.fingerprints_for(79)[0]
    assert finger.protocol == "TCP"
    assert finger.weight == 1.0


def test_match_returns_first_matching_fingerprint():
    db = ServiceFingerprintDB([
        ServiceFingerprint("First", "TCP", 9000, banner_pattern=r"hello"),
        ServiceFingerprint("Second", "TCP", 9000, banner_pattern=r"hello world"),
        ServiceFingerprint("Other", "TCP", 9001, banner_pattern=r"hello"),
    ])
    assert db.match(9000, "hello world").name == "First"
    assert db.match(9000, "nothing") is None
    assert db.match(9000, "") is None
    assert db.match(9002, "hello") is None


def test_patterns_are_multiline():
    db = ServiceFingerprintDB()
    assert db.match(21, "junk\r\n220 ProFTPD FTP server ready\r\n").name == "FTP"


def test_extract_version():
    db = ServiceFingerprintDB()
    ssh = db.fingerprints_for(22)[0]
    assert db.extract_version(ssh, SSH_BANNER.decode()) == "OpenSSH_8.9p1"
    telnet = db.fingerprints_for(23)[0]
    assert db.extract_version(telnet, "login:") is None


def test_probe_reads_banner(listener):
    async def run():
        async with listener(banner=SSH_BANNER) as port:
            db = ServiceFingerprintDB([
                ServiceFingerprint("SSH", "TCP", port, banner_pattern=r"SSH-\d\.\d",
                                   version_pattern=r"SSH-[\d.]+-(\S+)"),
            ])
            return await db.probe("127.0.0.1", port, timeout=1.0)

    result = asyncio.run(run())
    assert result.fingerprint.name == "SSH"
    assert result.version == "OpenSSH_8.9p1"
    assert result.banner.startswith("SSH-2.0")


def test_probe_sends_trigger_for_response_patterns(listener, http_response):
    async def run():
        async with listener(response=http_response) as port:
            db = ServiceFingerprintDB([
                ServiceFingerprint("HTTP", "TCP", port, response_pattern=r"HTTP/\d\.\d",
                                   version_pattern=r"Server: ([^\r\n]+)"),
            ])
            return await db.probe("127.0.0.1", port, timeout=0.3)

    result = asyncio.run(run())
    assert result.fingerprint.name == "HTTP"
    assert result.version == "Apache/2.4.41 (Ubuntu)"


def test_probe_without_fingerprints_never_connects(connection_counter):
    db = ServiceFingerprintDB([], open_connection=connection_counter)
    assert asyncio.run(db.probe("127.0.0.1", 22, timeout=0.5)) is None
    assert connection_counter.count() == 0


def test_probe_on_closed_port_returns_none(free_port):
    port = free_port()
    db = ServiceFingerprintDB([ServiceFingerprint("X", "TCP", port, banner_pattern="x")])
    assert asyncio.run(db.identify("127.0.0.1", port, timeout=0.5)) is None


def test_undecodable_file_falls_back_to_defaults(tmp_path, caplog):
    path = tmp_path / "fingerprints.json"
    path.write_bytes(b'[{"name": "\xff\xfe", "port": 1}]')
    with caplog.at_level(logging.WARNING, logger="hostprobe"):
        db = ServiceFingerprintDB.load(path)
    assert db.count == len(DEFAULT_FINGERPRINTS)
    assert "Cannot read fingerprint file" in caplog.text


def test_non_iterable_source_falls_back_to_defaults(caplog):
    with caplog.at_level(logging.WARNING, logger="hostprobe"):
        db = ServiceFingerprintDB.load(42)
    assert db.count == len(DEFAULT_FINGERPRINTS)
    assert "falling back to built-in fingerprints" in caplog.text
