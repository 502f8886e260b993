from __future__ import annotations

from contextlib import contextmanager

import pytest

from fakes import FakePage, FakePlaywright


@pytest.fixture
def fake_playwright(monkeypatch: pytest.MonkeyPatch):
    """Install a fake sync_playwright() serving the given page."""
    import run_https_audit

    def install(page: FakePage, launch_error: str | None = None) -> FakePlaywright:
        playwright = FakePlaywright(page, launch_error)

        @contextmanager
        def fake_sync_playwright():
            yield playwright

        monkeypatch.setattr(run_https_audit, "sync_playwright", fake_sync_playwright)
        return playwright

    return install
