import os
from pathlib import Path
from types import SimpleNamespace

import pytest
from geoip2.errors import AddressNotFoundError

from visitor_filter import geo
from visitor_filter.geo import GeoDatabaseError, GeoIPCountryLookup


class FakeReader:
    database_type = "GeoLite2-Country"
    opened = []

    def __init__(self, path):
        self.path = path
        self.closed = False
        self.table = {"81.2.69.142": "GB"}
        FakeReader.opened.append(self)

    def metadata(self):
        return SimpleNamespace(database_type=self.database_type)

    def country(self, ip):
        if ip == "not-an-ip":
            raise ValueError(f"'{ip}' does not appear to be an IPv4 or IPv6 address")
        if ip not in self.table:
            raise AddressNotFoundError(f"The address {ip} is not in the database.")
        return SimpleNamespace(country=SimpleNamespace(iso_code=self.table[ip]))

    def close(self):
        self.closed = True


@pytest.fixture
def lookup(monkeypatch):
    monkeypatch.setattr(geo.geoip2.database, "Reader", FakeReader)
    return GeoIPCountryLookup("GeoLite2-Country.mmdb")


def test_known_address_returns_iso_code(lookup):
    assert lookup.lookup_country("81.2.69.142") == "GB"


def test_address_not_found_is_absent(lookup):
    assert lookup.lookup_country("10.0.0.1") is None


def test_garbage_ip_is_absent(lookup):
    assert lookup.lookup_country("not-an-ip") is None


def test_close_via_context_manager(lookup):
    with lookup as opened:
        assert opened is lookup
    assert lookup.reader.closed is True


def test_missing_database_fails_at_construction(tmp_path):
    with pytest.raises(GeoDatabaseError):
        GeoIPCountryLookup(str(tmp_path / "missing.mmdb"))


def test_corrupt_database_fails_at_construction(tmp_path):
    db = tmp_path / "broken.mmdb"
    db.write_bytes(b"this is not a maxmind database")
    with pytest.raises(GeoDatabaseError):
        GeoIPCountryLookup(str(db))


class FakeCityReader(FakeReader):
    database_type = "GeoLite2-City"


def test_wrong_database_type_fails_at_construction(monkeypatch):
    monkeypatch.setattr(geo.geoip2.database, "Reader", FakeCityReader)
    FakeReader.opened.clear()
    with pytest.raises(GeoDatabaseError, match="GeoLite2-City"):
        GeoIPCountryLookup("GeoLite2-City.mmdb")
    assert FakeReader.opened[0].closed is True


def test_other_vendor_country_database_is_accepted(monkeypatch):
    class DbipReader(FakeReader):
        database_type = "DBIP-Country-Lite"

    monkeypatch.setattr(geo.geoip2.database, "Reader", DbipReader)
    assert GeoIPCountryLookup("dbip.mmdb").lookup_country("81.2.69.142") == "GB"


@pytest.mark.skipif("GEOIP_DB_PATH" in os.environ, reason="database path overridden")
def test_default_database_path_is_anchored_to_repo():
    path = Path(geo.DEFAULT_DB_PATH)
    assert path.is_absolute()
    assert path == geo.APP_ROOT / "db" / "GeoLite2-Country.mmdb"
