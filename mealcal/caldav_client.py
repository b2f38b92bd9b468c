from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

import caldav
import requests
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from requests.auth import HTTPBasicAuth

from mealcal.errors import CaldavRequestError
from mealcal.models import CaldavAccountConfig, CreatedEvent, EventPayload, utc_now


logger = logging.getLogger(__name__)

PRODID = "-//MealCal//CalDAV Sync//EN"


def _is_success(status: int | None) -> bool:
    return status is not None and 200 <= int(status) < 300


def build_ical(event: EventPayload) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("CALSCALE", "GREGORIAN")
    calendar_obj.add("METHOD", "PUBLISH")
    vevent = ICEvent()
    vevent.add("UID", event.uid)
    vevent.add("DTSTAMP", utc_now())
    vevent.add("DTSTART", event.start)
    vevent.add("DTEND", event.end)
    vevent.add("SUMMARY", event.summary or "")
    if event.description:
        vevent.add("DESCRIPTION", event.description)
    if event.url:
        vevent.add("URL", event.url)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


class CalDAVService:
    """Minimal CalDAV client: connection check, event PUT and event DELETE.

    Events live at ``<server_url><uid>.ics``; every request uses HTTP Basic Auth and
    carries the configured timeout.
    """

    def __init__(self, config: CaldavAccountConfig, timeout_seconds: int = 30) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds
        self._client: Any = None

    @property
    def base_url(self) -> str:
        return self.config.collection_url

    def _connect(self) -> Any:
        if self._client is not None:
            return self._client
        if not self.base_url:
            raise CaldavRequestError("CalDAV server URL is missing.")
        if not self.config.username or not self.config.password:
            raise CaldavRequestError("CalDAV credentials are missing.")
        self._client = caldav.DAVClient(
            url=self.base_url,
            auth=HTTPBasicAuth(self.config.username, self.config.password),
            timeout=self.timeout_seconds,
        )
        return self._client

    def _request(self, action: str, call: Callable[[Any], Any]) -> Any:
        client = self._connect()
        try:
            return call(client)
        except caldav_error.AuthorizationError as exc:
            raise CaldavRequestError(f"CalDAV {action} failed: unauthorized ({exc})", status=401, cause=exc) from exc
        except requests.exceptions.Timeout as exc:
            raise CaldavRequestError(
                f"CalDAV {action} timed out after {self.timeout_seconds}s",
                timed_out=True,
                cause=exc,
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise CaldavRequestError(f"CalDAV {action} failed: {exc}", cause=exc) from exc

    def event_href(self, uid: str) -> str:
        return f"{self.base_url}{uid}.ics"

    def check_collection(self) -> None:
        """PROPFIND the collection with ``Depth: 0``; raises on any non-2xx answer."""
        response = self._request("connection test", lambda client: client.propfind(self.base_url, depth=0))
        if not _is_success(response.status):
            raise CaldavRequestError(
                f"Connection failed: {response.status} {getattr(response, 'reason', '')}".strip(),
                status=response.status,
            )

    def test_connection(self) -> tuple[bool, str]:
        try:
            self.check_collection()
        except CaldavRequestError as exc:
            return False, exc.message
        return True, "Connection successful"

    def create_event(self, event: EventPayload, *, overwrite: bool = False) -> CreatedEvent:
        """PUT an event and return its UID.

        Without ``overwrite`` a fresh UID is generated when missing and the PUT refuses to
        replace an existing resource. With ``overwrite`` the event at ``event.uid`` is
        replaced in place.
        """
        if event.end <= event.start:
            raise CaldavRequestError("Event end must be after start.")
        uid = event.uid or str(uuid.uuid4())
        event.uid = uid
        raw_ics = build_ical(event)
        href = self.event_href(uid)
        headers = {"Content-Type": "text/calendar; charset=utf-8"}
        if not overwrite:
            headers["If-None-Match"] = "*"
        response = self._request("create event", lambda client: client.put(href, raw_ics, headers))
        if not _is_success(response.status):
            raise CaldavRequestError(
                f"CalDAV createEvent failed {response.status} {getattr(response, 'reason', '')}".strip(),
                status=response.status,
            )
        headers_in = getattr(response, "headers", None) or {}
        etag = str(headers_in.get("ETag", "") or "")
        logger.debug("PUT %s -> %s", href, response.status)
        return CreatedEvent(uid=uid, href=href, etag=etag, raw_ics=raw_ics)

    def delete_event(self, uid: str) -> bool:
        """DELETE the event; returns False when the server reports it already gone (404)."""
        href = self.event_href(uid)
        response = self._request("delete event", lambda client: client.delete(href))
        if response.status == 404:
            logger.debug("DELETE %s -> 404, already gone", href)
            return False
        if not _is_success(response.status):
            raise CaldavRequestError(
                f"CalDAV delete failed {response.status} {getattr(response, 'reason', '')}".strip(),
                status=response.status,
            )
        return True
