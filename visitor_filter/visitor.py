from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from fastapi import Request, Response

MARKER_COOKIE = "_vf_visitor_was_here"

# first non-empty wins, REMOTE_ADDR is the last resort
IP_SIGNALS = (
    "HTTP_CLIENT_IP",
    "HTTP_X_FORWARDED_FOR",
    "HTTP_X_FORWARDED",
    "HTTP_FORWARDED_FOR",
    "HTTP_FORWARDED",
    "REMOTE_ADDR",
)

LANGUAGE_TAG_LEN = 5


class CountryLookup(Protocol):
    def lookup_country(self, ip: str) -> Optional[str]:
        ...


class MarkerStore(Protocol):
    def read(self, name: str) -> bool:
        ...

    def write(self, name: str, value: str, max_age: Optional[int]) -> None:
        ...

    def clear(self, name: str) -> None:
        ...


@dataclass(frozen=True)
class VisitorContext:
    ip: Optional[str] = None
    country_iso_code: Optional[str] = None
    language: Optional[str] = None
    http_referer: Optional[str] = None
    was_here_before: bool = False


def _present(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def cookie_is_truthy(value: Optional[str]) -> bool:
    return value not in (None, "", "0")


class VisitorMarker:
    """Repeat-visit marker kept in client-side state."""

    def __init__(self, store: MarkerStore, name: str = MARKER_COOKIE, max_age: Optional[int] = None):
        self.store = store
        self.name = name
        self.max_age = max_age

    def was_here(self) -> bool:
        return self.store.read(self.name)

    def mark_visited(self) -> None:
        self.store.write(self.name, "1", self.max_age)

    def clear_visited_marker(self) -> None:
        self.store.clear(self.name)


class ResponseCookieStore:
    """
    Reads the marker from request cookies and queues writes until a response exists.
    The gate calls apply() on whatever response it ends up returning.
    """

    def __init__(self, cookies: Mapping[str, str]):
        self.cookies = dict(cookies)
        self.pending: List[Tuple[str, str, Optional[str], Optional[int]]] = []

    def read(self, name: str) -> bool:
        return cookie_is_truthy(self.cookies.get(name))

    def write(self, name: str, value: str, max_age: Optional[int]) -> None:
        self.pending.append(("set", name, value, max_age))

    def clear(self, name: str) -> None:
        self.pending.append(("delete", name, None, None))

    def apply(self, response: Response) -> Response:
        for op, name, value, max_age in self.pending:
            if op == "set":
                response.set_cookie(name, value, max_age=max_age, path="/")
            else:
                response.delete_cookie(name, path="/")
        self.pending.clear()
        return response


def signals_from_request(request: Request) -> Dict[str, str]:
    # CGI naming: "X-Forwarded-For" -> HTTP_X_FORWARDED_FOR
    signals = {
        "HTTP_" + k.upper().replace("-", "_"): v
        for k, v in request.headers.items()
    }
    signals["REMOTE_ADDR"] = request.client.host if request.client else ""
    return signals


def resolve_ip(signals: Mapping[str, str]) -> Optional[str]:
    ip = ""
    for key in IP_SIGNALS:
        value = signals.get(key) or ""
        if value.strip():
            ip = value
            break

    if "," in ip:
        ip = ip.split(",")[0]
    return _present(ip)


def resolve_country(ip: Optional[str], geo: Optional[CountryLookup]) -> Optional[str]:
    if ip is None or geo is None:
        return None
    return geo.lookup_country(ip)


def resolve_language(signals: Mapping[str, str]) -> Optional[str]:
    value = signals.get("HTTP_ACCEPT_LANGUAGE")
    if _present(value) is None:
        return None
    # raw leading slice, no trimming or locale validation
    return value[:LANGUAGE_TAG_LEN]


def resolve_referer(signals: Mapping[str, str]) -> Optional[str]:
    value = signals.get("HTTP_REFERER")
    return value if _present(value) else None


def resolve_context(
    signals: Mapping[str, str],
    geo: Optional[CountryLookup] = None,
    marker: Optional[VisitorMarker] = None,
) -> VisitorContext:
    ip = resolve_ip(signals)
    return VisitorContext(
        ip=ip,
        country_iso_code=resolve_country(ip, geo),
        language=resolve_language(signals),
        http_referer=resolve_referer(signals),
        was_here_before=marker.was_here() if marker else False,
    )
