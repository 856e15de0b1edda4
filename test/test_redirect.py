from multidict import CIMultiDict
from structlog.testing import capture_logs

from filter_proxy.config import Address
from filter_proxy.redirect import RedirectRewriter, rewrite_location

TARGET = "http://backend.internal:9000"
PUBLIC = Address("proxy.example.com", 8080)


def test_rewrites_redirect_to_upstream():
    location = rewrite_location("http://backend.internal:9000/login", TARGET, PUBLIC)
    assert location == "http://proxy.example.com:8080/login"


def test_keeps_query_string():
    location = rewrite_location("http://backend.internal:9000/login?next=home", TARGET, PUBLIC)
    assert location == "http://proxy.example.com:8080/login?next=home"


def test_relative_location_is_resolved():
    location = rewrite_location("/dashboard", TARGET, PUBLIC)
    assert location == "http://proxy.example.com:8080/dashboard"


def test_https_upstream_redirect_forced_to_http():
    location = rewrite_location("https://backend.internal:9000/secure", TARGET, PUBLIC)
    assert location == "http://proxy.example.com:8080/secure"


def test_other_host_is_untouched():
    location = "https://other.example.com/x"
    assert rewrite_location(location, TARGET, PUBLIC) == location


def test_same_host_different_port_is_untouched():
    location = "http://backend.internal:9001/login"
    assert rewrite_location(location, TARGET, PUBLIC) == location


def test_default_port_is_equivalent():
    location = rewrite_location("http://backend:80/a", "http://backend", PUBLIC)
    assert location == "http://proxy.example.com:8080/a"


def test_public_address_without_port():
    location = rewrite_location("/a", TARGET, Address("proxy.example.com"))
    assert location == "http://proxy.example.com/a"


def test_unparseable_location_is_untouched():
    location = "http://[::1/broken"

    with capture_logs() as logs:
        assert rewrite_location(location, TARGET, PUBLIC) == location

    assert [entry["event"] for entry in logs] == ["location_parse_error"]
    assert logs[0]["log_level"] == "warning"
    assert logs[0]["location"] == location


def test_rewrite_is_deterministic():
    for location in ["/login", "http://backend.internal:9000/a?b=1", "https://other.example.com/x"]:
        results = {rewrite_location(location, TARGET, PUBLIC) for _ in range(10)}
        assert len(results) == 1


def test_ipv6_public_address():
    location = rewrite_location("/a", TARGET, Address.parse("[::1]:8080"))
    assert location == "http://[::1]:8080/a"


def test_rewriter_applies_to_headers():
    rewriter = RedirectRewriter(TARGET, PUBLIC)
    headers = CIMultiDict({"location": "/next", "Set-Cookie": "a=1"})
    headers.add("Set-Cookie", "b=2")

    rewriter.apply(headers)

    assert headers["Location"] == "http://proxy.example.com:8080/next"
    assert headers.getall("Set-Cookie") == ["a=1", "b=2"]


def test_rewriter_ignores_responses_without_location():
    rewriter = RedirectRewriter(TARGET, PUBLIC)
    headers = CIMultiDict({"Content-Type": "text/plain"})

    rewriter.apply(headers)

    assert dict(headers) == {"Content-Type": "text/plain"}
