#!/usr/bin/env python3
"""
HTTPS hygiene runner for the https-audit skill.

Loads one page in a headless browser and reports mixed content, invalid
certificates and missing http -> https redirection as JSON on stdout.

Usage:
    python run_https_audit.py https://example.com
    python run_https_audit.py example.com --ua "MyBot/1.0" --sandbox false
    python run_https_audit.py https://example.com --mixed-content combined --output report.json
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import urlparse, urlunparse

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_SETTLE_MS = 2500
BROWSERS = ("chromium", "firefox", "webkit")

MIXED_SPLIT = "split"
MIXED_COMBINED = "combined"
MIXED_CONTENT_MODES = (MIXED_SPLIT, MIXED_COMBINED)

CHECKS: dict[str, dict[str, str]] = {
    "mixed_content": {
        "name": "There should be no mixed content",
        "description": (
            "Insecure assets such as images, javascript, and css that are loaded on https pages are "
            "considered to be mixed content. To fix this issue, change the URLs for these assets to use https."
        ),
    },
    "mixed_content_active": {
        "name": "There should be no active mixed content",
        "description": (
            "Active mixed content such as javascript, css, and iframes requested over http from an https page "
            "is blocked by browsers and can break the page. To fix this issue, change the URLs for these "
            "assets to use https."
        ),
    },
    "mixed_content_passive": {
        "name": "There should be no passive mixed content",
        "description": (
            "Passive mixed content such as images, audio, and video loaded over http on an https page can be "
            "viewed or altered in transit, and browsers flag the page as not fully secure. To fix this issue, "
            "change the URLs for these assets to use https."
        ),
    },
    "invalid_cert": {
        "name": "The page should not have an invalid https certificate",
        "description": (
            "The page should have a valid https certificate. Browsers will display a warning and often prevent "
            "people from visiting pages that have an invalid https certificate. You will have to update your "
            "certificate to fix this problem."
        ),
    },
    "not_https_by_default": {
        "name": "The page should be https by default",
        "description": "All requests to the http version of the page should redirect to https.",
    },
}

REPORT_CHECKS = {
    MIXED_SPLIT: ("mixed_content_active", "mixed_content_passive", "invalid_cert", "not_https_by_default"),
    MIXED_COMBINED: ("mixed_content", "invalid_cert", "not_https_by_default"),
}

# Chromium, legacy Chromium/puppeteer, Firefox (NSS), WebKit (libsoup/macOS).
CERTIFICATE_ERROR_PREFIXES = (
    "SSL Certificate error",
    "net::ERR_CERT_",
    "SSL_ERROR_",
    "SEC_ERROR_",
    "MOZILLA_PKIX_ERROR_",
    "The certificate for this server is invalid",
    "SSL peer certificate",
)

SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
API_PREFIX_RE = re.compile(r"^[A-Z][A-Za-z]*\.[a-z][A-Za-z]*: ")


@dataclass
class CheckResult:
    name: str
    description: str
    fail: bool = False
    data: list[str] = field(default_factory=list)

    def record(self, evidence: str) -> None:
        self.fail = True
        if evidence not in self.data:
            self.data.append(evidence)

    def clear(self) -> None:
        self.fail = False
        self.data = []

    def to_dict(self) -> dict[str, Any]:
        return {"fail": self.fail, "name": self.name, "description": self.description, "data": list(self.data)}


class Report:
    """Per-run set of named checks.

    The audit driver owns the report; observers only append evidence to it.
    """

    def __init__(self, check_ids: tuple[str, ...] | list[str]) -> None:
        self.checks: dict[str, CheckResult] = {
            check_id: CheckResult(name=CHECKS[check_id]["name"], description=CHECKS[check_id]["description"])
            for check_id in check_ids
        }

    @classmethod
    def for_mode(cls, mode: str) -> Report:
        if mode not in REPORT_CHECKS:
            raise ValueError(f"Unsupported mixed content mode: {mode}")
        return cls(REPORT_CHECKS[mode])

    def __getitem__(self, check_id: str) -> CheckResult:
        return self.checks[check_id]

    def __contains__(self, check_id: object) -> bool:
        return check_id in self.checks

    def record(self, check_id: str, evidence: str) -> None:
        self.checks[check_id].record(evidence)

    def clear_mixed_content(self) -> None:
        for check_id, check in self.checks.items():
            if check_id.startswith("mixed_content"):
                check.clear()

    def failed_checks(self) -> list[str]:
        return [check_id for check_id, check in self.checks.items() if check.fail]

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {check_id: check.to_dict() for check_id, check in self.checks.items()}

    def to_json(self, indent: int | None = None) -> str:
        if indent is None:
            return json.dumps(self.to_dict(), separators=(",", ":"))
        return json.dumps(self.to_dict(), indent=indent)


@dataclass(frozen=True)
class NavigationError:
    url: str
    message: str
    certificate: bool


@dataclass
class AuditResult:
    report: Report
    completed: bool
    error: NavigationError | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.completed else 1


def normalize_url(raw: str) -> str:
    value = raw.strip()
    if not value:
        raise ValueError("Empty URL")
    parsed = urlparse(value)
    if not parsed.scheme:
        value = f"https://{value}"
        parsed = urlparse(value)
    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https"):
        raise ValueError(f"Unsupported URL scheme: {parsed.scheme}")
    if not parsed.netloc:
        raise ValueError(f"Missing host in URL: {raw}")
    path = parsed.path or "/"
    return urlunparse((scheme, parsed.netloc, path, parsed.params, parsed.query, ""))


def url_scheme(url: str) -> str:
    return urlparse(url).scheme.lower()


def with_scheme(url: str, scheme: str) -> str:
    return SCHEME_RE.sub(f"{scheme}://", url, count=1)


def strip_scheme(url: str) -> str:
    return SCHEME_RE.sub("//", url, count=1)


def is_mixed_content(page_url: str, request_url: str) -> bool:
    """Insecure sub-resource of a secure page; the document itself never counts."""
    return (
        url_scheme(page_url) == "https"
        and url_scheme(request_url) == "http"
        and strip_scheme(request_url) != strip_scheme(page_url)
    )


def navigation_error_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or str(exc)
    first_line = message.strip().splitlines()[0] if message.strip() else ""
    return API_PREFIX_RE.sub("", first_line, count=1).strip()


def is_certificate_error(message: str) -> bool:
    return message.startswith(CERTIFICATE_ERROR_PREFIXES)


def is_document_request(page: Any, request: Any) -> bool:
    """Main frame navigation, including every redirect hop of it."""
    return request.is_navigation_request() and request.frame == page.main_frame


@contextmanager
def observe(page: Any, report: Report, mode: str) -> Iterator[set[Any]]:
    """Attach dialog and network observers for the duration of the block.

    A request is judged when it is issued, against the page it was issued
    from. In split mode its outcome (failed or finished) decides the check
    later. Yields the set of insecure requests still awaiting an outcome.
    """
    pending: set[Any] = set()

    def on_dialog(dialog: Any) -> None:
        logger.info("Dismissing %s dialog", getattr(dialog, "type", "native"))
        dialog.dismiss()

    def on_request(request: Any) -> None:
        if is_document_request(page, request) or not is_mixed_content(page.url, request.url):
            return
        if mode == MIXED_SPLIT:
            pending.add(request)
        else:
            logger.debug("mixed_content: %s", request.url)
            report.record("mixed_content", request.url)

    def settled(check_id: str):
        def on_outcome(request: Any) -> None:
            if request not in pending:
                return
            pending.discard(request)
            logger.debug("%s: %s", check_id, request.url)
            report.record(check_id, request.url)

        return on_outcome

    handlers = {"request": on_request, "dialog": on_dialog}
    if mode == MIXED_SPLIT:
        handlers["requestfailed"] = settled("mixed_content_active")
        handlers["requestfinished"] = settled("mixed_content_passive")

    for event, handler in handlers.items():
        page.on(event, handler)
    try:
        yield pending
    finally:
        for event, handler in handlers.items():
            page.remove_listener(event, handler)


def navigate(page: Any, url: str, timeout_ms: int) -> NavigationError | None:
    logger.info("Navigating to %s", url)
    try:
        page.goto(url, timeout=timeout_ms)
    except PlaywrightError as exc:
        message = navigation_error_message(exc)
        logger.warning("Navigation to %s failed: %s", url, message)
        return NavigationError(url=url, message=message, certificate=is_certificate_error(message))
    logger.debug("Committed %s", page.url)
    return None


def audit_page(
    page: Any,
    url: str,
    *,
    mode: str = MIXED_SPLIT,
    timeout_ms: int = DEFAULT_TIMEOUT * 1000,
    settle_ms: int = DEFAULT_SETTLE_MS,
) -> AuditResult:
    report = Report.for_mode(mode)

    def fail_fast(error: NavigationError) -> AuditResult:
        if error.certificate:
            report.record("invalid_cert", error.message)
        return AuditResult(report=report, completed=False, error=error)

    with observe(page, report, mode) as pending:
        error = navigate(page, url, timeout_ms)
        if error is not None:
            return fail_fast(error)

        if url_scheme(page.url) != "https":
            # Evidence gathered on an insecure load says nothing about the https page.
            report.clear_mixed_content()
            pending.clear()
            report.record("not_https_by_default", page.url)
            error = navigate(page, with_scheme(url, "https"), timeout_ms)
            if error is not None:
                return fail_fast(error)
        else:
            error = navigate(page, with_scheme(url, "http"), timeout_ms)
            if error is not None:
                return fail_fast(error)
            if url_scheme(page.url) != "https":
                report.record("not_https_by_default", page.url)

        # Deferred scripts and lazy media keep requesting after load.
        page.wait_for_timeout(settle_ms)

    return AuditResult(report=report, completed=True)


def launch_options(browser_name: str, sandbox: bool) -> dict[str, Any]:
    options: dict[str, Any] = {"headless": True}
    if browser_name != "chromium":
        return options
    args = ["--disable-features=AutoupgradeMixedContent"]
    if sandbox:
        options["chromium_sandbox"] = True
    else:
        options["chromium_sandbox"] = False
        args.extend(["--no-sandbox", "--disable-setuid-sandbox"])
    options["args"] = args
    return options


def run_audit(
    url: str,
    *,
    user_agent: str | None = None,
    sandbox: bool = True,
    browser_name: str = "chromium",
    mode: str = MIXED_SPLIT,
    timeout_ms: int = DEFAULT_TIMEOUT * 1000,
    settle_ms: int = DEFAULT_SETTLE_MS,
) -> AuditResult:
    with sync_playwright() as playwright:
        browser_type = getattr(playwright, browser_name)
        browser = browser_type.launch(**launch_options(browser_name, sandbox))
        try:
            context_options: dict[str, Any] = {}
            if user_agent:
                context_options["user_agent"] = user_agent
            context = browser.new_context(**context_options)
            try:
                page = context.new_page()
                return audit_page(page, url, mode=mode, timeout_ms=timeout_ms, settle_ms=settle_ms)
            finally:
                context.close()
        finally:
            browser.close()


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


def write_report(path: str, report: Report) -> Path:
    out = Path(path).resolve()
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(report.to_json(indent=2) + "\n", encoding="utf-8")
    return out


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Audit a single page for mixed content, certificate and redirect issues.")
    p.add_argument("url")
    p.add_argument("--ua", help="Override the browser user-agent string")
    p.add_argument("--sandbox", type=parse_bool, default=True, help="Set to false to launch without the OS sandbox")
    p.add_argument("--browser", choices=BROWSERS, default="chromium")
    p.add_argument("--mixed-content", choices=MIXED_CONTENT_MODES, default=MIXED_SPLIT)
    p.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help="Navigation timeout in seconds")
    p.add_argument("--settle-ms", type=int, default=DEFAULT_SETTLE_MS)
    p.add_argument("--output", help="Also write the JSON report to this file")
    p.add_argument("--verbose", action="store_true")
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        target = normalize_url(args.url)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    try:
        result = run_audit(
            target,
            user_agent=args.ua,
            sandbox=args.sandbox,
            browser_name=args.browser,
            mode=args.mixed_content,
            timeout_ms=max(args.timeout, 0) * 1000,
            settle_ms=max(args.settle_ms, 0),
        )
    except PlaywrightError as exc:
        print(f"Error: {navigation_error_message(exc)}", file=sys.stderr)
        return 1

    print(result.report.to_json())
    if args.output:
        out = write_report(args.output, result.report)
        logger.info("Report written to %s", out)
    if result.error:
        logger.warning("Audit stopped early at %s", result.error.url)
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
