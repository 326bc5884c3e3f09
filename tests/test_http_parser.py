import pytest

from ipv6_pool_proxy.core.exceptions import (
    RequestParseError,
    TunnelTargetError,
    UpstreamProtocolError,
)
from ipv6_pool_proxy.core.lib.http_parser import (
    BodyKind,
    Headers,
    ProxyMode,
    parse_authority,
    parse_request_head,
    parse_response_head,
    request_framing,
    response_framing,
)


def head(*lines: str) -> bytes:
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


class TestHeaders:
    def test_lookup_is_case_insensitive(self):
        headers = Headers([("Content-Type", "text/plain"), ("X-Trace", "a")])
        assert headers.get("content-type") == "text/plain"
        assert "CONTENT-TYPE" in headers
        assert headers.get("missing", "default") == "default"

    def test_order_and_casing_survive_encoding(self):
        headers = Headers([("X-B", "2"), ("x-a", "1"), ("X-B", "3")])
        assert headers.get_all("x-b") == ["2", "3"]
        assert headers.encode() == "X-B: 2\r\nx-a: 1\r\nX-B: 3\r\n"

    def test_set_replaces_first_occurrence_in_place(self):
        headers = Headers([("Accept", "*/*"), ("host", "old"), ("X", "1"), ("Host", "dup")])
        headers.set("Host", "new")
        assert list(headers) == [("Accept", "*/*"), ("host", "new"), ("X", "1")]

    def test_remove_and_tokens(self):
        headers = Headers([("Connection", "Keep-Alive, Upgrade"), ("Proxy-Connection", "close")])
        assert headers.tokens("connection") == {"keep-alive", "upgrade"}
        assert headers.remove("proxy-connection") == 1
        assert "Proxy-Connection" not in headers


class TestParseAuthority:
    def test_default_port(self):
        assert parse_authority("example.test", 80) == ("example.test", 80)

    def test_bracketed_ipv6(self):
        assert parse_authority("[2001:db8::1]:8443") == ("2001:db8::1", 8443)

    @pytest.mark.parametrize("value", ["example.test", "example.test:", ":443", "a:b", "2001:db8::1:443", "h:70000"])
    def test_port_required_and_valid(self, value):
        with pytest.raises(ValueError):
            parse_authority(value)


class TestParseRequest:
    def test_absolute_uri(self):
        request = parse_request_head(
            head("GET http://example.test:8080/a/b?q=1 HTTP/1.1", "Host: stale", "Accept: */*")
        )
        assert request.mode is ProxyMode.DIRECT
        assert (request.host, request.port, request.path) == ("example.test", 8080, "/a/b?q=1")
        assert request.headers.get("host") == "example.test:8080"

    def test_absolute_uri_default_port(self):
        request = parse_request_head(head("GET http://example.test HTTP/1.1"))
        assert (request.host, request.port, request.path) == ("example.test", 80, "/")
        assert request.headers.get("Host") == "example.test"

    def test_origin_form_uses_host_header(self):
        request = parse_request_head(head("GET /index.html HTTP/1.1", "Host: [2001:db8::2]:81"))
        assert (request.host, request.port, request.path) == ("2001:db8::2", 81, "/index.html")
        assert request.authority == "[2001:db8::2]:81"

    def test_origin_form_without_host_is_rejected(self):
        with pytest.raises(RequestParseError):
            parse_request_head(head("GET / HTTP/1.1"))

    def test_connect(self):
        request = parse_request_head(head("CONNECT example.test:443 HTTP/1.1", "Host: example.test:443"))
        assert request.mode is ProxyMode.TUNNEL
        assert (request.host, request.port) == ("example.test", 443)

    def test_connect_ipv6_literal(self):
        request = parse_request_head(head("CONNECT [2001:db8::9]:22 HTTP/1.1"))
        assert (request.host, request.port) == ("2001:db8::9", 22)

    @pytest.mark.parametrize("target", ["example.test", "example.test:0", "example.test:99999", "[2001:db8::9]"])
    def test_connect_target_needs_valid_port(self, target):
        with pytest.raises(TunnelTargetError):
            parse_request_head(head(f"CONNECT {target} HTTP/1.1"))

    @pytest.mark.parametrize(
        "line",
        [
            "GET http://example.test/",
            "GET http://example.test/ HTTP/1.1 extra",
            "GET  http://example.test/ HTTP/1.1",
            "G(T http://example.test/ HTTP/1.1",
            "GET http://example.test/ HTTX/1.1",
            "GET https://example.test/ HTTP/1.1",
            "GET example.test HTTP/1.1",
        ],
    )
    def test_malformed_request_line(self, line):
        with pytest.raises(RequestParseError) as exc_info:
            parse_request_head(head(line))
        assert exc_info.value.status == 400
        assert not isinstance(exc_info.value, TunnelTargetError)

    @pytest.mark.parametrize("target", ["http://[::1/", "http://[::1:80/x", "http:///nohost"])
    def test_malformed_absolute_uri(self, target):
        with pytest.raises(RequestParseError) as exc_info:
            parse_request_head(head(f"GET {target} HTTP/1.1"))
        assert exc_info.value.status == 400

    def test_malformed_header_lines(self):
        with pytest.raises(RequestParseError):
            parse_request_head(head("GET http://a.test/ HTTP/1.1", "no colon here"))
        with pytest.raises(RequestParseError):
            parse_request_head(head("GET http://a.test/ HTTP/1.1", "X-A: 1", " folded"))

    def test_leading_empty_lines_are_ignored(self):
        request = parse_request_head(b"\r\n" + head("GET http://a.test/ HTTP/1.1"))
        assert request.host == "a.test"

    def test_origin_head_strips_proxy_headers(self):
        request = parse_request_head(
            head(
                "POST http://a.test/submit HTTP/1.1",
                "Host: a.test",
                "Proxy-Connection: keep-alive",
                "Proxy-Authorization: Basic Zm9vOmJhcg==",
                "Content-Length: 3",
                "X-Custom: \xe9t\xe9",
            )
        )
        assert request.origin_head() == (
            b"POST /submit HTTP/1.1\r\n"
            b"Host: a.test\r\n"
            b"Content-Length: 3\r\n"
            b"X-Custom: \xe9t\xe9\r\n"
            b"\r\n"
        )


class TestKeepAlive:
    @pytest.mark.parametrize(
        ("version", "headers", "expected"),
        [
            ("HTTP/1.1", [], True),
            ("HTTP/1.1", ["Connection: close"], False),
            ("HTTP/1.1", ["Proxy-Connection: close"], False),
            ("HTTP/1.0", [], False),
            ("HTTP/1.0", ["Connection: keep-alive"], True),
            ("HTTP/1.0", ["Proxy-Connection: Keep-Alive"], True),
        ],
    )
    def test_request_keep_alive(self, version, headers, expected):
        request = parse_request_head(head(f"GET http://a.test/ {version}", *headers))
        assert request.keep_alive is expected

    def test_response_keep_alive(self):
        assert parse_response_head(head("HTTP/1.1 200 OK")).keep_alive
        assert not parse_response_head(head("HTTP/1.1 200 OK", "Connection: close")).keep_alive
        assert not parse_response_head(head("HTTP/1.0 200 OK")).keep_alive


class TestFraming:
    def request(self, *headers: str):
        return parse_request_head(head("POST http://a.test/ HTTP/1.1", *headers))

    def test_request_without_body(self):
        assert request_framing(self.request()).kind is BodyKind.NONE
        assert request_framing(self.request("Content-Length: 0")).kind is BodyKind.NONE

    def test_request_content_length(self):
        framing = request_framing(self.request("Content-Length: 42"))
        assert (framing.kind, framing.length) == (BodyKind.LENGTH, 42)
        assert framing.reusable

    def test_request_repeated_equal_lengths(self):
        assert request_framing(self.request("Content-Length: 5", "Content-Length: 5")).length == 5

    def test_request_chunked(self):
        assert request_framing(self.request("Transfer-Encoding: gzip, chunked")).kind is BodyKind.CHUNKED

    def test_request_chunked_with_length_is_not_reusable(self):
        request = self.request("Transfer-Encoding: chunked", "Content-Length: 5")
        framing = request_framing(request)
        assert framing.kind is BodyKind.CHUNKED
        assert not framing.reusable
        # The length must not reach the origin next to chunked coding
        assert "content-length" not in request.headers
        assert b"Content-Length" not in request.origin_head()
        assert b"Transfer-Encoding: chunked" in request.origin_head()

    @pytest.mark.parametrize(
        "headers",
        [
            ("Transfer-Encoding: gzip",),
            ("Content-Length: 5", "Content-Length: 6"),
            ("Content-Length: -1",),
            ("Content-Length: ten",),
        ],
    )
    def test_request_bad_framing(self, headers):
        with pytest.raises(RequestParseError):
            request_framing(self.request(*headers))

    @pytest.mark.parametrize(
        ("method", "status_line", "headers", "kind"),
        [
            ("GET", "HTTP/1.1 200 OK", ["Content-Length: 10"], BodyKind.LENGTH),
            ("HEAD", "HTTP/1.1 200 OK", ["Content-Length: 10"], BodyKind.NONE),
            ("GET", "HTTP/1.1 204 No Content", [], BodyKind.NONE),
            ("GET", "HTTP/1.1 304 Not Modified", ["Content-Length: 10"], BodyKind.NONE),
            ("GET", "HTTP/1.1 200 OK", ["Transfer-Encoding: chunked"], BodyKind.CHUNKED),
            ("GET", "HTTP/1.1 200 OK", ["Transfer-Encoding: gzip"], BodyKind.UNTIL_CLOSE),
            ("GET", "HTTP/1.1 200 OK", [], BodyKind.UNTIL_CLOSE),
            ("GET", "HTTP/1.1 200 OK", ["Content-Length: 0"], BodyKind.NONE),
        ],
    )
    def test_response_framing(self, method, status_line, headers, kind):
        response = parse_response_head(head(status_line, *headers))
        assert response_framing(method, response).kind is kind

    def test_until_close_is_not_reusable(self):
        framing = response_framing("GET", parse_response_head(head("HTTP/1.1 200 OK")))
        assert not framing.reusable

    def test_response_conflicting_lengths(self):
        response = parse_response_head(head("HTTP/1.1 200 OK", "Content-Length: 1, 2"))
        with pytest.raises(UpstreamProtocolError):
            response_framing("GET", response)


class TestParseResponse:
    def test_status_line_and_raw_bytes(self):
        raw = head("HTTP/1.1 404 Not Found", "Server: test")
        response = parse_response_head(raw)
        assert (response.version, response.status, response.reason) == ("HTTP/1.1", 404, "Not Found")
        assert response.raw == raw

    def test_interim_responses(self):
        assert parse_response_head(head("HTTP/1.1 100 Continue")).interim
        assert not parse_response_head(head("HTTP/1.1 101 Switching Protocols")).interim
        assert not parse_response_head(head("HTTP/1.1 200 OK")).interim

    @pytest.mark.parametrize("line", ["HTTP/1.1", "HTTP/1.1 OK", "ICY 200 OK", "HTTP/1.1 2000 OK"])
    def test_malformed_status_line(self, line):
        with pytest.raises(UpstreamProtocolError):
            parse_response_head(head(line))
