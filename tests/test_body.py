"""
Tests for plain-text body extraction from multipart message trees.
"""

import base64

from inbox_triage.agent.schemas import MimePart
from inbox_triage.mail.body import decode_base64, extract_body, strip_html


def b64url(text: str, pad: bool = False) -> str:
    encoded = base64.urlsafe_b64encode(text.encode("utf-8")).decode()
    return encoded if pad else encoded.rstrip("=")


def part(mime_type: str, text: str = None, parts: list = None) -> MimePart:
    return MimePart(
        mime_type=mime_type,
        data=b64url(text) if text is not None else None,
        parts=parts or [],
    )


class TestDecodeBase64:
    def test_url_safe_without_padding(self):
        assert decode_base64(b64url("Hello?> world~")) == "Hello?> world~"

    def test_url_safe_with_padding(self):
        assert decode_base64(b64url("Hi", pad=True)) == "Hi"

    def test_standard_alphabet(self):
        standard = base64.b64encode("subjects?>>".encode()).decode()
        assert decode_base64(standard) == "subjects?>>"

    def test_unicode(self):
        assert decode_base64(b64url("Grüße, café")) == "Grüße, café"

    def test_empty_and_none(self):
        assert decode_base64("") == ""
        assert decode_base64(None) == ""

    def test_garbage_never_raises(self):
        assert isinstance(decode_base64("!!!not base64###"), str)


class TestStripHtml:
    def test_strips_tags_and_collapses_whitespace(self):
        assert strip_html("<p>Hello</p>\n\n<p>  there </p>") == "Hello there"

    def test_drops_script_and_style(self):
        markup = "<style>p {color: red}</style><p>Visible</p><script>track()</script>"
        assert strip_html(markup) == "Visible"

    def test_unescapes_entities(self):
        assert strip_html("<b>Tom &amp; Jerry</b>") == "Tom & Jerry"


class TestExtractBody:
    def test_prefers_plain_text(self):
        payload = part("multipart/alternative", parts=[
            part("text/html", "<p>HTML version</p>"),
            part("text/plain", "Plain version"),
        ])
        assert extract_body(payload) == "Plain version"

    def test_finds_nested_plain_text_depth_first(self):
        payload = part("multipart/mixed", parts=[
            part("multipart/alternative", parts=[
                part("text/plain", "Nested plain"),
                part("text/html", "<p>Nested html</p>"),
            ]),
            part("application/pdf", "%PDF"),
        ])
        assert extract_body(payload) == "Nested plain"

    def test_falls_back_to_html(self):
        payload = part("multipart/alternative", parts=[
            part("text/html", "<div>Hello <b>there</b></div>"),
        ])
        assert extract_body(payload) == "Hello there"

    def test_skips_empty_plain_part(self):
        payload = part("multipart/alternative", parts=[
            part("text/plain"),
            part("text/html", "<p>Only html has data</p>"),
        ])
        assert extract_body(payload) == "Only html has data"

    def test_falls_back_to_any_part_with_data(self):
        payload = part("multipart/mixed", parts=[
            part("application/octet-stream", "raw bytes as text"),
        ])
        assert extract_body(payload) == "raw bytes as text"

    def test_single_part_message_uses_top_level_payload(self):
        assert extract_body(part("text/plain", "Top level body")) == "Top level body"

    def test_single_part_html_is_stripped(self):
        assert extract_body(part("text/html", "<p>Top html</p>")) == "Top html"

    def test_parts_without_data_fall_back_to_top_level(self):
        payload = MimePart(mime_type="text/plain", data=b64url("Root data"), parts=[MimePart(mime_type="text/plain")])
        assert extract_body(payload) == "Root data"

    def test_empty_message(self):
        assert extract_body(MimePart()) == ""
        assert extract_body(None) == ""

    def test_from_gmail_payload(self):
        gmail_payload = {
            "mimeType": "multipart/alternative",
            "headers": [{"name": "Subject", "value": "Hi"}],
            "body": {"size": 0},
            "parts": [
                {"mimeType": "text/plain", "body": {"data": b64url("From Gmail"), "size": 10}},
                {"mimeType": "text/html", "body": {"data": b64url("<p>From Gmail</p>")}},
            ],
        }
        assert extract_body(MimePart.from_gmail(gmail_payload)) == "From Gmail"
