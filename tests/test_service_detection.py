import asyncio
import threading

import pytest

from hostprobe.core.service_detection import (
    PORT_PROBES,
    DetectionCache,
    ProbeType,
    ServiceDetector,
    classify_banner,
    detect_service_async,
)
from hostprobe.core.service_fingerprints import ServiceFingerprint, ServiceFingerprintDB
from hostprobe.output.metrics import ScanMetrics

SSH_BANNER = b"SSH-2.0-OpenSSH_8.9\r\n"


async def refuse_all(host, port, **kwargs):
    raise ConnectionRefusedError(port)


@pytest.mark.parametrize("banner,expected", [
    ("SSH-2.0-OpenSSH_8.9", "SSH"),
    ("HTTP/1.1 400 Bad Request", "HTTP"),
    ("220 ProFTPD FTP Server ready", "FTP"),
    ("220 mail.example.com ESMTP Postfix", "SMTP"),
    ("+OK Dovecot ready.", "POP3"),
    ("* OK IMAP4rev1 ready", "IMAP"),
    ("-NOAUTH Authentication required.", "Redis"),
    ("RFB 003.008", "VNC"),
    ("hello", None),
    ("", None),
])
def test_classify_banner(banner, expected):
    assert classify_banner(banner) == expected


def test_cache_keeps_first_label():
    cache = DetectionCache()
    assert cache.put("10.0.0.1", 80, "HTTP") == "HTTP"
    assert cache.put("10.0.0.1", 80, "Other") == "HTTP"
    assert cache.get("10.0.0.1", 80) == "HTTP"
    assert ("10.0.0.1", 80) in cache
    assert len(cache) == 1
    cache.clear()
    assert cache.get("10.0.0.1", 80) is None



def test_cache_first_label_wins_across_threads():
    cache = DetectionCache()
    stored = []

    def writer(label):
        for port in range(200):
            stored.append((port, cache.put("10.0.0.1", port, label)))

    threads = [threading.Thread(target=writer, args=(f"svc{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) == 200
    for port, label in stored:
        assert cache.get("10.0.0.1", port) == label

def test_probe_type_for_port():
    detector = ServiceDetector(fingerprint_db=ServiceFingerprintDB([]))
    assert detector.get_probe_type_for_port(8000) is ProbeType.HTTP
    assert detector.get_probe_type_for_port(22) is ProbeType.SSH
    assert detector.get_probe_type_for_port(31337) is ProbeType.GENERIC
    assert PORT_PROBES[443] is ProbeType.HTTPS


def test_http_listener_labelled_http(listener, http_response):
    async def run():
        async with listener(response=http_response) as port:
            detector = ServiceDetector(timeout=0.3)
            return await detector.detect("127.0.0.1", port)

    assert asyncio.run(run()) == "HTTP"


def test_cached_result_avoids_second_connection(listener, http_response, connection_counter):
    metrics = ScanMetrics()

    async def run():
        async with listener(response=http_response) as port:
            detector = ServiceDetector(timeout=0.3, open_connection=connection_counter, metrics=metrics)
            first = await detector.detect("127.0.0.1", port)
            connects = connection_counter.count()
            second = await detector.detect("127.0.0.1", port)
            return first, connects, second

    first, connects, second = asyncio.run(run())
    assert first == second == "HTTP"
    assert connects >= 1
    assert connection_counter.count() == connects
    assert metrics.get_counters()["hostprobe_services_identified_total"] == 1


def test_high_weight_fingerprint_gets_protocol_suffix(listener):
    async def run():
        async with listener(banner=SSH_BANNER) as port:
            db = ServiceFingerprintDB([
                ServiceFingerprint("SSH", "TCP", port, banner_pattern=r"^SSH-", weight=0.95),
            ])
            return await ServiceDetector(timeout=0.5, fingerprint_db=db).detect("127.0.0.1", port)

    assert asyncio.run(run()) == "SSH (TCP)"


def test_low_weight_fingerprint_gets_bare_name(listener):
    async def run():
        async with listener(banner=b"hello from gopher\r\n") as port:
            db = ServiceFingerprintDB([
                ServiceFingerprint("Gopher", "TCP", port, banner_pattern=r"gopher", weight=0.5),
            ])
            return await ServiceDetector(timeout=0.5, fingerprint_db=db).detect("127.0.0.1", port)

    assert asyncio.run(run()) == "Gopher"


def test_fingerprint_source_records_are_used(listener):
    async def run():
        async with listener(banner=b"hello from gopher\r\n") as port:
            detector = ServiceDetector(
                timeout=0.5,
                fingerprint_source=[{"name": "Gopher", "port": port, "banner_pattern": "gopher"}],
            )
            return await detector.detect("127.0.0.1", port)

    assert asyncio.run(run()) == "Gopher (TCP)"


def test_generic_probe_uses_banner(listener):
    async def run():
        async with listener(banner=SSH_BANNER) as port:
            detector = ServiceDetector(timeout=0.5, fingerprint_db=ServiceFingerprintDB([]))
            return await detector.detect("127.0.0.1", port)

    assert asyncio.run(run()) == "SSH"


def test_static_table_fallback_when_unreachable():
    detector = ServiceDetector(timeout=0.2, open_connection=refuse_all)
    assert asyncio.run(detector.detect("127.0.0.1", 3306)) == "MySQL"


def test_unknown_port_yields_none_and_is_not_cached():
    detector = ServiceDetector(timeout=0.2, open_connection=refuse_all)
    assert asyncio.run(detector.detect("127.0.0.1", 31337)) is None
    assert len(detector.cache) == 0


def test_detect_batch_preserves_input_order():
    detector = ServiceDetector(timeout=0.2, open_connection=refuse_all)
    result = asyncio.run(detector.detect_batch("127.0.0.1", [6379, 31337, 22]))
    assert result == [(6379, "Redis"), (31337, None), (22, "SSH")]


def test_detector_reusable_across_event_loops():
    detector = ServiceDetector(timeout=0.2, open_connection=refuse_all)
    assert asyncio.run(detector.detect("127.0.0.1", 25)) == "SMTP"
    assert asyncio.run(detector.detect("127.0.0.1", 110)) == "POP3"


def test_detect_service_async_convenience(listener, http_response):
    async def run():
        async with listener(response=http_response) as port:
            return await detect_service_async("127.0.0.1", port, timeout=0.3)

    assert asyncio.run(run()) == "HTTP"


def test_detect_batch_maps_unexpected_errors_to_none(monkeypatch):
    detector = ServiceDetector(timeout=0.2, open_connection=refuse_all)
    real_detect = detector.detect

    async def flaky_detect(address, port):
        if port == 31337:
            raise RuntimeError("decoder blew up")
        return await real_detect(address, port)

    monkeypatch.setattr(detector, "detect", flaky_detect)
    result = asyncio.run(detector.detect_batch("127.0.0.1", [22, 31337, 6379]))
    assert result == [(22, "SSH"), (31337, None), (6379, "Redis")]
