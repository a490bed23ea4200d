"""
Tests for engagesync/utils - domain normalization and structured logging.
"""
import json
import logging
import sys

import pytest

from engagesync.utils.domains import email_domain, normalize_email, website_domain
from engagesync.utils.logging import (
    StructuredJsonFormatter,
    correlation_id_ctx,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


class TestDomains:
    def test_normalize_email(self):
        assert normalize_email("  Jane@Acme.COM ") == "jane@acme.com"
        assert normalize_email(None) == ""

    @pytest.mark.parametrize("email,expected", [
        ("jane@Acme.com", "acme.com"),
        ("weird@name@corp.io", "corp.io"),
        ("no-at-sign", None),
        ("trailing@", None),
        (None, None),
    ])
    def test_email_domain(self, email, expected):
        assert email_domain(email) == expected

    @pytest.mark.parametrize("website,expected", [
        ("https://www.acme.com/", "acme.com"),
        ("http://Acme.com/about?x=1", "acme.com"),
        ("www.acme.com", "acme.com"),
        ("acme.com", "acme.com"),
        ("https://shop.acme.com:8443/#top", "shop.acme.com"),
        ("acme.com.", "acme.com"),
        ("", None),
        (None, None),
    ])
    def test_website_domain(self, website, expected):
        assert website_domain(website) == expected


class TestCorrelationId:
    def test_generate_is_hex_uuid(self):
        cid = generate_correlation_id()
        assert len(cid) == 32
        int(cid, 16)

    def test_set_and_get(self):
        token = correlation_id_ctx.set(None)
        try:
            assert set_correlation_id("batch-abc") is None
            assert get_correlation_id() == "batch-abc"
        finally:
            correlation_id_ctx.reset(token)


class TestStructuredJsonFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord(
            name="engagesync.test", level=logging.WARNING, pathname=__file__, lineno=1,
            msg="Updated %d %s records", args=(3, "Lead"), exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_single_line_json(self):
        token = correlation_id_ctx.set("cid-1")
        try:
            line = StructuredJsonFormatter().format(self._record(sobject="Lead", batch_id="b1", ignored="x"))
        finally:
            correlation_id_ctx.reset(token)

        assert "\n" not in line
        entry = json.loads(line)
        assert entry["level"] == "WARNING"
        assert entry["module"] == "engagesync.test"
        assert entry["message"] == "Updated 3 Lead records"
        assert entry["correlation_id"] == "cid-1"
        assert entry["sobject"] == "Lead"
        assert entry["batch_id"] == "b1"
        assert "ignored" not in entry

    def test_exception_included(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = self._record()
            record.exc_info = sys.exc_info()

        entry = json.loads(StructuredJsonFormatter().format(record))
        assert "ValueError: bad" in entry["exception"]
