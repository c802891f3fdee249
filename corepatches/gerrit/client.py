"""Gerrit REST client.

Only the handful of endpoints core-patches needs:

- ``GET /changes/{id}``                           subject and numeric id
- ``GET /changes/{id}/revisions/{rev}/patch``     base64 encoded diff
- ``GET /changes/{id}/in``                        tags and branches containing the change

Gerrit prefixes JSON bodies with ``)]}'`` to defeat XSSI; it is stripped
before decoding.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import quote

import httpx

from corepatches.errors import (
    InvalidResponseError,
    UnexpectedResponseError,
    UnexpectedValueError,
)
from corepatches.settings import DEFAULT_GERRIT_URL, DEFAULT_TIMEOUT

XSSI_PREFIX = ")]}'"
CURRENT_REVISION = "current"


@dataclass
class IncludedIn:
    """Tags and branches into which a change has landed."""

    tags: list[str] = field(default_factory=list)
    branches: list[str] = field(default_factory=list)


class ReviewService(Protocol):
    def get_subject(self, change_id: str) -> str: ...

    def get_numeric_id(self, change_id: str) -> int: ...

    def get_patch(self, change_id: str, revision: int = -1) -> bytes: ...

    def get_included_in(self, change_id: str) -> IncludedIn: ...


class GerritClient:
    """Synchronous Gerrit REST client.

    Parameters
    ----------
    base_url : str
        Gerrit root, e.g. ``https://review.typo3.org``.
    timeout : float
        Per-request timeout in seconds.
    client : httpx.Client | None
        Pre-built client, mainly for tests (``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GERRIT_URL,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._change_cache: dict[str, dict] = {}

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GerritClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- changes -------------------------------------------------------------

    def get_subject(self, change_id: str) -> str:
        subject = self._get_change(change_id).get("subject")
        if not isinstance(subject, str):
            raise UnexpectedValueError(f"Change {change_id} has no subject")
        return subject

    def get_numeric_id(self, change_id: str) -> int:
        number = self._get_change(change_id).get("_number")
        # bool is an int subclass
        if not isinstance(number, int) or isinstance(number, bool):
            raise UnexpectedValueError(f"Change {change_id} has no numeric id")
        return number

    def get_patch(self, change_id: str, revision: int = -1) -> bytes:
        """Fetch the diff of a revision; ``-1`` means the current revision."""
        rev = CURRENT_REVISION if revision < 0 else str(revision)
        body = self._request(f"/changes/{_quote(change_id)}/revisions/{rev}/patch")
        try:
            return base64.b64decode(body, validate=False)
        except (binascii.Error, ValueError) as e:
            raise InvalidResponseError(f"Patch for change {change_id} is not base64: {e}") from e

    def get_included_in(self, change_id: str) -> IncludedIn:
        data = self._get_json(f"/changes/{_quote(change_id)}/in")
        tags = data.get("tags", [])
        branches = data.get("branches", [])
        if not isinstance(tags, list) or not isinstance(branches, list):
            raise UnexpectedValueError(f"Included-in data for change {change_id} is malformed")
        return IncludedIn(
            tags=[str(t) for t in tags],
            branches=[str(b) for b in branches],
        )

    # -- transport -----------------------------------------------------------

    def _get_change(self, change_id: str) -> dict:
        if change_id not in self._change_cache:
            self._change_cache[change_id] = self._get_json(f"/changes/{_quote(change_id)}")
        return self._change_cache[change_id]

    def _get_json(self, path: str) -> dict:
        body = self._request(path).decode("utf-8", errors="replace")

        if not body.startswith(XSSI_PREFIX):
            raise InvalidResponseError(f"Response for {path} lacks the Gerrit JSON prefix")

        try:
            data = json.loads(body[len(XSSI_PREFIX):])
        except json.JSONDecodeError as e:
            raise InvalidResponseError(f"Response for {path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise UnexpectedValueError(f"Response for {path} is not a JSON object")
        return data

    def _request(self, path: str) -> bytes:
        url = f"{self.base_url}{path}"
        try:
            response = self._client.get(url)
        except httpx.RequestError as e:
            raise UnexpectedResponseError(f"Failed to reach Gerrit at {url}: {e}") from e

        if response.status_code != 200:
            raise UnexpectedResponseError(
                f"Gerrit answered {response.status_code} for {url}"
            )
        return response.content


def _quote(change_id: str) -> str:
    return quote(str(change_id), safe="")
