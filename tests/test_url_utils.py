from urllib.parse import quote

import pytest

from core.proxy.url_utils import (
    build_proxy_url,
    decode_target_url,
    encode_component,
    get_base_path,
    get_origin,
    has_file_extension,
    is_same_document,
    split_fragment,
)

TARGET = "https://example.com/papers/doc.html?page=2"


class TestDecodeTargetUrl:
    @pytest.mark.parametrize("times", [0, 1, 2, 3])
    def test_decodes_any_number_of_encodings(self, times):
        encoded = TARGET
        for _ in range(times):
            encoded = quote(encoded, safe="")

        assert decode_target_url(encoded) == TARGET

    def test_decoded_value_is_stable(self):
        decoded = decode_target_url(quote(quote(TARGET, safe=""), safe=""))
        assert decode_target_url(decoded) == decoded

    def test_malformed_escape_stops_decoding(self):
        url = "https://example.com/100%zz"
        assert decode_target_url(url) == url

    def test_malformed_escape_keeps_last_good_decode(self):
        url = quote("https://example.com/a%zz", safe="")
        assert decode_target_url(url) == "https://example.com/a%zz"

    def test_invalid_utf8_keeps_last_good_decode(self):
        url = quote("https://example.com/%FF", safe="")
        assert decode_target_url(url) == "https://example.com/%FF"

    def test_plus_is_not_treated_as_space(self):
        assert decode_target_url("https://example.com/a+b") == "https://example.com/a+b"


class TestEncoding:
    def test_encode_component_matches_browser(self):
        assert encode_component("https://example.com/a b?x=1&y=(2)") == (
            "https%3A%2F%2Fexample.com%2Fa%20b%3Fx%3D1%26y%3D(2)"
        )

    def test_build_proxy_url_keeps_fragment_outside_encoding(self):
        assert build_proxy_url("/proxy", "https://example.com/x.html", "#sec") == (
            "/proxy?url=https%3A%2F%2Fexample.com%2Fx.html#sec"
        )


class TestBasePath:
    @pytest.mark.parametrize("url, expected", [
        ("https://host/a/b/page.html", True),
        ("https://host/a/b/STYLE.CSS", True),
        ("https://host/fonts/x.woff2", True),
        ("https://host/a/b/page.html?x=1", True),
        ("https://arxiv.org/abs/2301.00001v2", False),
        ("https://host/a/b/", False),
        ("https://host", False),
    ])
    def test_has_file_extension(self, url, expected):
        assert has_file_extension(url) is expected

    def test_file_like_url_uses_parent_directory(self):
        assert get_base_path("https://host/a/b/page.html") == "https://host/a/b/"

    def test_directory_like_url_gets_trailing_slash(self):
        assert get_base_path("https://arxiv.org/html/2301.00001v2") == "https://arxiv.org/html/2301.00001v2/"

    def test_directory_with_slash_is_unchanged(self):
        assert get_base_path("https://host/docs/") == "https://host/docs/"

    def test_host_only(self):
        assert get_base_path("https://host") == "https://host/"

    def test_query_is_not_part_of_base(self):
        assert get_base_path("https://host/docs?tab=1") == "https://host/docs/"

    def test_origin_keeps_port(self):
        assert get_origin("http://127.0.0.1:8080/x/y.html") == "http://127.0.0.1:8080"

    def test_origin_rejects_relative_url(self):
        with pytest.raises(ValueError):
            get_origin("not-a-url")


class TestSameDocument:
    def test_split_fragment(self):
        assert split_fragment("page.html#sec2") == ("page.html", "#sec2")
        assert split_fragment("page.html") == ("page.html", "")

    def test_exact_match(self):
        assert is_same_document("https://host/a/page.html", "https://host/a/page.html")

    def test_query_and_trailing_slash_ignored(self):
        assert is_same_document("https://host/docs/?v=1", "https://host/docs")

    def test_version_suffix_ignored(self):
        assert is_same_document("https://arxiv.org/html/2301.00001v2", "https://arxiv.org/html/2301.00001")
        assert is_same_document("https://arxiv.org/html/2301.00001v1", "https://arxiv.org/html/2301.00001v3")

    def test_different_documents(self):
        assert not is_same_document("https://host/a/page.html", "https://host/a/other.html")
        assert not is_same_document("https://arxiv.org/html/2301.00001v2", "https://arxiv.org/html/2301.00002v2")
