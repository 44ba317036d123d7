"""
Country lookup backed by a MaxMind GeoLite2/GeoIP2 Country database.

The reader is opened once and shared read-only between requests.
"""
import logging
import os
from pathlib import Path
from typing import Optional

import geoip2.database
from geoip2.errors import AddressNotFoundError
from maxminddb.errors import InvalidDatabaseError

logger = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_DB_PATH = os.getenv("GEOIP_DB_PATH", str(APP_ROOT / "db" / "GeoLite2-Country.mmdb"))


class GeoDatabaseError(RuntimeError):
    pass


class GeoIPCountryLookup:
    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        try:
            self.reader = geoip2.database.Reader(db_path)
        except (OSError, InvalidDatabaseError, ValueError) as e:
            logger.error("Failed to load GeoIP database %s: %s", db_path, e)
            raise GeoDatabaseError(f"cannot open GeoIP database {db_path}: {e}") from e

        # City/ASN files open fine but reject country() on every request
        database_type = self.reader.metadata().database_type
        if "Country" not in database_type:
            self.reader.close()
            logger.error("GeoIP database %s is %s, not a Country database", db_path, database_type)
            raise GeoDatabaseError(f"{db_path} is a {database_type} database, expected a Country database")
        logger.info("GeoIP database loaded from %s", db_path)

    def lookup_country(self, ip: str) -> Optional[str]:
        try:
            return self.reader.country(ip).country.iso_code
        except AddressNotFoundError:
            return None
        except ValueError:
            # not an IP address at all (garbage in a forwarding header)
            logger.debug("Unparseable client ip %r", ip)
            return None

    def close(self):
        self.reader.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
