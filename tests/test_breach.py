"""
Tests for breach-count annotation, using a fake aiohttp session.
"""
import asyncio
import hashlib

import aiohttp
import pytest

from aegis_vault.data import RecordDraft
from aegis_vault.vault.breach import BreachChecker, annotate_breaches


def _suffix(secret: str) -> str:
    return hashlib.sha1(secret.encode("utf-8")).hexdigest().upper()[5:]


class FakeResponse:

    def __init__(self, status: int, body: str):
        self.status = status
        self._body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return self._body


class FakeSession:

    def __init__(self, status=200, body="", error=None):
        self.status = status
        self.body = body
        self.error = error
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status, self.body)


class TestBreachChecker:

    def test_matches_suffix(self):
        body = f"0000000000000000000000000000000000A:1\r\n{_suffix('password')}:3861493\r\n"
        session = FakeSession(body=body)
        count = asyncio.run(BreachChecker(session).count("password"))
        assert count == 3861493

    def test_only_prefix_leaves(self):
        session = FakeSession(body="")
        asyncio.run(BreachChecker(session).count("password"))
        digest = hashlib.sha1(b"password").hexdigest().upper()
        [url] = session.urls
        assert url.endswith("/" + digest[:5])
        assert digest[5:] not in url

    def test_no_match(self):
        session = FakeSession(body="FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF:2")
        assert asyncio.run(BreachChecker(session).count("unique-secret")) == 0

    @pytest.mark.parametrize("session", [
        FakeSession(status=503),
        FakeSession(error=aiohttp.ClientConnectionError("offline")),
        FakeSession(error=asyncio.TimeoutError()),
    ])
    def test_fails_open(self, session):
        assert asyncio.run(BreachChecker(session).count("password")) == 0

    def test_empty_secret(self):
        session = FakeSession()
        assert asyncio.run(BreachChecker(session).count("")) == 0
        assert session.urls == []


class TestAnnotateBreaches:

    def test_stores_counts(self, vault):
        weak = vault.create_record(RecordDraft(title="Weak", password="password"))
        note = vault.create_record(RecordDraft(title="Note"))
        session = FakeSession(body=f"{_suffix('password')}:42")
        counts = asyncio.run(annotate_breaches(vault, BreachChecker(session)))
        assert counts == {weak: 42}
        assert vault.get_record(weak).pwned_count == 42
        assert vault.get_record(note).pwned_count == 0

    def test_selected_ids(self, vault):
        a = vault.create_record(RecordDraft(title="A", password="password"))
        vault.create_record(RecordDraft(title="B", password="password"))
        session = FakeSession(body=f"{_suffix('password')}:7")
        counts = asyncio.run(annotate_breaches(vault, BreachChecker(session), [a]))
        assert counts == {a: 7}
        assert len(session.urls) == 1
