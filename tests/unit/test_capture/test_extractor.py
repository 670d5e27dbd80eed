"""Unit tests for resource reference enumeration."""

from sitemirror.capture.extractor import (
    extract_anchor_links,
    extract_asset_urls,
    extract_css_references,
    parse_css_urls,
    parse_html,
    parse_srcset,
    parse_srcset_candidates,
)

BASE = "https://example.com/blog/post"


class TestExtractAssetUrls:
    """Tests for extract_asset_urls."""

    def test_markup_references(self):
        soup = parse_html("""
            <html><head>
              <link rel="stylesheet" href="/css/site.css">
              <link rel="icon" href="favicon.ico">
              <link rel="canonical" href="/blog/post">
              <script src="https://cdn.example.net/lib.js"></script>
            </head><body>
              <img src="img/a.png" srcset="img/a-2x.png 2x, img/a-3x.png 3x">
              <picture><source srcset="/img/b.webp 1x"></picture>
              <video src="/media/clip.mp4" poster="/media/poster.jpg"></video>
              <input type="image" src="/img/button.png">
              <input type="text" src="/img/ignored.png">
              <div style="background: url('/img/bg.jpg')"></div>
              <style>@font-face { src: url(/fonts/a.woff2); }</style>
            </body></html>
        """)

        urls = extract_asset_urls(soup, BASE)

        assert urls == [
            "https://example.com/css/site.css",
            "https://example.com/blog/favicon.ico",
            "https://example.com/blog/img/a.png",
            "https://example.com/media/clip.mp4",
            "https://example.com/media/poster.jpg",
            "https://example.com/img/button.png",
            "https://cdn.example.net/lib.js",
            "https://example.com/blog/img/a-2x.png",
            "https://example.com/blog/img/a-3x.png",
            "https://example.com/img/b.webp",
            "https://example.com/img/bg.jpg",
            "https://example.com/fonts/a.woff2",
        ]

    def test_skips_unfetchable_and_duplicates(self):
        soup = parse_html("""
            <img src="data:image/png;base64,AAAA">
            <img src="javascript:void(0)">
            <img src="/a.png"><img src="/a.png#frag">
        """)
        assert extract_asset_urls(soup, BASE) == ["https://example.com/a.png"]

    def test_honours_base_href(self):
        soup = parse_html('<head><base href="https://static.example.com/v2/"></head><img src="x.png">')
        assert extract_asset_urls(soup, BASE) == ["https://static.example.com/v2/x.png"]


class TestExtractAnchorLinks:
    """Tests for extract_anchor_links."""

    def test_absolute_links_without_fragments(self):
        soup = parse_html("""
            <a href="/about">About</a>
            <a href="/about#team">Team</a>
            <a href="../contact">Contact</a>
            <a href="mailto:hi@example.com">Mail</a>
            <a href="#top">Top</a>
            <a href="ftp://example.com/file">FTP</a>
            <map><area href="https://other.example/"></map>
        """)
        assert extract_anchor_links(soup, BASE) == [
            "https://example.com/about",
            "https://example.com/contact",
            "https://other.example/",
        ]


class TestCss:
    """Tests for stylesheet reference parsing."""

    def test_parse_css_urls(self):
        css = """
            @import "base.css";
            @import url('print.css') print;
            body { background: url(bg.png); }
            .logo { background: url("data:image/svg+xml;utf8,<svg/>"); }
            .hero { background-image: url( 'hero.jpg' ); }
        """
        assert parse_css_urls(css) == ["print.css", "bg.png", "hero.jpg", "base.css"]

    def test_extract_css_references_resolves_against_stylesheet(self):
        css = "@import 'theme/dark.css'; .a { background: url(../img/a.png) }"
        assert extract_css_references(css, "https://example.com/css/site.css") == [
            "https://example.com/img/a.png",
            "https://example.com/css/theme/dark.css",
        ]

    def test_parse_srcset(self):
        assert parse_srcset("a.png 1x, b.png 2x,c.png") == ["a.png", "b.png", "c.png"]
        assert parse_srcset("") == []

    def test_parse_srcset_keeps_commas_inside_urls(self):
        value = (
            "https://res.cloudinary.com/demo/image/upload/w_400,c_fill/a.jpg 400w, "
            "/img/b.jpg, /img/c.jpg 2x"
        )
        assert parse_srcset_candidates(value) == [
            ("https://res.cloudinary.com/demo/image/upload/w_400,c_fill/a.jpg", "400w"),
            ("/img/b.jpg", ""),
            ("/img/c.jpg", "2x"),
        ]

    def test_srcset_url_with_comma_is_one_asset(self):
        soup = parse_html('<img srcset="/upload/w_400,c_fill/a.jpg 400w, /upload/w_800,c_fill/a.jpg 800w">')
        assert extract_asset_urls(soup, BASE) == [
            "https://example.com/upload/w_400,c_fill/a.jpg",
            "https://example.com/upload/w_800,c_fill/a.jpg",
        ]
