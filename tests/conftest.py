"""Shared fakes for the exporter tests."""

import threading

import pytest

from fail2ban_exporter import (
    ExporterMetrics,
    Fail2BanError,
    GeoCache,
    GeoLookupError,
    GeoResult,
    ReconciliationCycle,
)


class FakeClock:

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeGeoProvider:
    """Returns coordinates derived from the last octet; hosts in ``failing`` raise."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []
        self.lock = threading.Lock()

    def lookup(self, host):
        with self.lock:
            self.calls.append(host)
        if host in self.failing:
            raise GeoLookupError(f"{host}: refused", "lookup_refused")
        last = int(host.rsplit(".", 1)[1])
        return GeoResult.from_coordinates(float(last), float(-last))


class FakeBanSource:
    """In-memory fail2ban. A jail mapped to an exception raises it."""

    def __init__(self, jails=None, running=True, version="0.11.2"):
        self.jails = dict(jails or {})
        self.running = running
        self.version_string = version
        self.jail_list_error = None

    def service_running(self):
        return self.running

    def list_jails(self):
        if self.jail_list_error is not None:
            raise self.jail_list_error
        return list(self.jails)

    def list_banned_hosts(self, jail):
        hosts = self.jails[jail]
        if isinstance(hosts, Exception):
            raise hosts
        return list(hosts)

    def version(self):
        if self.version_string is None:
            raise Fail2BanError("unrecognised version output", "unexpected_output")
        return self.version_string


def geo_for(host):
    last = int(host.rsplit(".", 1)[1])
    return GeoResult.from_coordinates(float(last), float(-last))


def banned_value(metrics, jail, host, geo):
    return metrics.registry.get_sample_value(
        "fail2ban_ip_banned",
        {"ip": host, "jail": jail, "lat": geo.latitude, "lon": geo.longitude},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeGeoProvider()


@pytest.fixture
def source():
    return FakeBanSource()


@pytest.fixture
def metrics():
    return ExporterMetrics()


@pytest.fixture
def cycle(source, provider, metrics, clock):
    geo_cache = GeoCache(provider, clock=clock)
    return ReconciliationCycle(source, geo_cache, metrics)
