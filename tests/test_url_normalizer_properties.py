"""
Property-based tests for the URL Normalizer module.

Uses Hypothesis to check that normalization is idempotent, that signed
attachment queries collapse to a single key, and that the ignore policy
drops assets, images, invites and private addresses.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from link_scanner.url_normalizer import UrlNormalizer


# Strategies for generating test data

path_segment = st.text(
    alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789-_"),
    min_size=1,
    max_size=12,
)

query_strategy = st.dictionaries(
    keys=st.sampled_from(["ex", "is", "hm", "token", "v"]),
    values=st.text(alphabet=st.sampled_from("0123456789abcdef"), min_size=1, max_size=16),
    min_size=1,
    max_size=4,
)


@st.composite
def attachment_url_strategy(draw) -> tuple[str, str]:
    """Generate a signed attachment URL and its expected normalized form."""
    channel = draw(st.integers(min_value=1, max_value=10**18))
    message = draw(st.integers(min_value=1, max_value=10**18))
    name = draw(path_segment)
    extension = draw(st.sampled_from(["zip", "exe", "txt", "pdf"]))
    base = f"https://cdn.discordapp.com/attachments/{channel}/{message}/{name}.{extension}"
    query = "&".join(f"{k}={v}" for k, v in draw(query_strategy).items())
    return f"{base}?{query}", base


@st.composite
def plain_url_strategy(draw) -> str:
    """Generate a URL on an ordinary public host."""
    host = draw(st.sampled_from(["example.com", "evil.test", "docs.python.org", "a.b.example.net"]))
    segments = draw(st.lists(path_segment, min_size=0, max_size=4))
    url = f"https://{host}/" + "/".join(segments)
    if draw(st.booleans()):
        url += "?" + "&".join(f"{k}={v}" for k, v in draw(query_strategy).items())
    if draw(st.booleans()):
        url += "#" + draw(path_segment)
    return url


class TestNormalizationIdempotence:
    """
    Tests that normalizing twice gives the same key as normalizing once.

    *For any* input string, normalize(normalize(u)) == normalize(u).
    """

    @given(raw=st.text(max_size=200))
    @settings(max_examples=100)
    def test_idempotent_for_arbitrary_text(self, raw: str) -> None:
        normalizer = UrlNormalizer()
        once = normalizer.normalize(raw)
        assert normalizer.normalize(once) == once

    @given(pair=attachment_url_strategy())
    @settings(max_examples=100)
    def test_idempotent_for_attachment_urls(self, pair: tuple[str, str]) -> None:
        normalizer = UrlNormalizer()
        raw, _ = pair
        once = normalizer.normalize(raw)
        assert normalizer.normalize(once) == once


class TestVolatileQueryStripping:
    """
    Tests that attachment links differing only in signed query parameters
    share one dedup key.
    """

    @given(pair=attachment_url_strategy(), other_query=query_strategy)
    @settings(max_examples=100)
    def test_query_dropped_for_attachments(self, pair: tuple[str, str], other_query: dict) -> None:
        normalizer = UrlNormalizer()
        raw, base = pair
        alternate = base + "?" + "&".join(f"{k}={v}" for k, v in other_query.items())

        assert normalizer.normalize(raw) == base
        assert normalizer.normalize(alternate) == normalizer.normalize(raw)

    def test_fragment_is_kept(self) -> None:
        normalizer = UrlNormalizer()
        raw = "https://cdn.discordapp.com/attachments/1/2/file.zip?ex=abc&is=def#part"
        assert normalizer.normalize(raw) == "https://cdn.discordapp.com/attachments/1/2/file.zip#part"

    def test_other_cdn_paths_untouched(self) -> None:
        normalizer = UrlNormalizer()
        raw = "https://cdn.discordapp.com/emojis/1.zip?size=48"
        assert normalizer.normalize(raw) == raw

    @given(url=plain_url_strategy())
    @settings(max_examples=100)
    def test_ordinary_urls_unchanged(self, url: str) -> None:
        assert UrlNormalizer().normalize(url) == url

    def test_unparseable_input_returned_unchanged(self) -> None:
        normalizer = UrlNormalizer()
        raw = "http://[not-an-ipv6/attachments/x?y=1"
        assert normalizer.normalize(raw) == raw


class TestIgnorePolicy:
    """Tests for the default ignore list and for prepare()."""

    @given(url=st.sampled_from([
        "https://discord.com/assets/abc123.js",
        "https://discord.com/channels/1/2/3",
        "https://media.discordapp.net/attachments/1/2/photo.png",
        "https://images-ext-1.discordapp.net/external/abc",
        "https://cdn.discordapp.com/attachments/1/2/pic.JPG?ex=1",
        "https://example.com/banner.webp",
        "https://example.com/logo.svg?v=2",
        "https://discord.gg/invite-code",
        "http://localhost:8080/admin",
        "http://127.0.0.1/",
        "https://192.168.1.1/router",
        "http://10.0.0.5/internal",
        "http://172.16.0.1/",
        "https://172.31.255.255/x",
    ]))
    @settings(max_examples=100)
    def test_ignored_urls(self, url: str) -> None:
        normalizer = UrlNormalizer()
        assert normalizer.should_ignore(url)
        assert normalizer.prepare(url) is None

    @given(url=st.sampled_from([
        "https://example.com/",
        "https://evil.test/payload.exe",
        "http://172.15.0.1/",
        "http://172.32.0.1/",
        "https://cdn.discordapp.com/attachments/1/2/tool.zip?ex=1",
        "https://github.com/user/repo",
    ]))
    @settings(max_examples=100)
    def test_scannable_urls(self, url: str) -> None:
        normalizer = UrlNormalizer()
        assert not normalizer.should_ignore(url)
        assert normalizer.prepare(url) == normalizer.normalize(url)

    def test_prepare_rejects_empty(self) -> None:
        assert UrlNormalizer().prepare("") is None

    def test_custom_patterns_replace_defaults(self) -> None:
        import re

        normalizer = UrlNormalizer(ignore_patterns=(re.compile(r"blocked\.test"),))
        assert normalizer.should_ignore("https://blocked.test/a")
        assert not normalizer.should_ignore("http://localhost/")
