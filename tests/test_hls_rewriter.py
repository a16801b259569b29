import unittest

from hls_rewriter import (
    ManifestRewriteError,
    manifest_base,
    resolve_reference,
    rewrite_manifest,
)

MANIFEST_URL = "https://cdn.example.com/live/stream/index.m3u8"


class ManifestRewriteTests(unittest.TestCase):
    def test_relative_segment_resolves_against_directory(self) -> None:
        out = rewrite_manifest("#EXTM3U\n#EXTINF:6.0,\nseg1.ts", MANIFEST_URL)
        self.assertEqual(
            out,
            "#EXTM3U\n#EXTINF:6.0,\nhttps://cdn.example.com/live/stream/seg1.ts",
        )

    def test_root_relative_segment_resolves_against_origin(self) -> None:
        out = rewrite_manifest("/a/seg.ts", MANIFEST_URL)
        self.assertEqual(out, "https://cdn.example.com/a/seg.ts")

    def test_absolute_line_is_byte_identical(self) -> None:
        line = "http://other.example.com/seg.ts  "
        self.assertEqual(rewrite_manifest(line, MANIFEST_URL), line)

    def test_key_uri_is_rewritten(self) -> None:
        out = rewrite_manifest('#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0x1', MANIFEST_URL)
        self.assertEqual(
            out,
            '#EXT-X-KEY:METHOD=AES-128,URI="https://cdn.example.com/live/stream/key.bin",IV=0x1',
        )

    def test_only_first_uri_attribute_is_touched(self) -> None:
        line = '#EXT-X-MEDIA:URI="a.m3u8",OTHER,URI="b.m3u8"'
        out = rewrite_manifest(line, MANIFEST_URL)
        self.assertIn('URI="https://cdn.example.com/live/stream/a.m3u8"', out)
        self.assertIn('URI="b.m3u8"', out)

    def test_comment_without_uri_passes_through(self) -> None:
        text = "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:6"
        self.assertEqual(rewrite_manifest(text, MANIFEST_URL), text)

    def test_line_count_and_blank_lines_preserved(self) -> None:
        text = "#EXTM3U\n\n#EXTINF:4,\nseg.ts\n\n"
        out = rewrite_manifest(text, MANIFEST_URL)
        self.assertEqual(len(out.split("\n")), len(text.split("\n")))
        self.assertEqual(out.split("\n")[1], "")
        self.assertEqual(out.split("\n")[-1], "")

    def test_rewrite_is_idempotent(self) -> None:
        text = '#EXTM3U\n#EXT-X-MAP:URI="init.mp4"\n#EXTINF:4,\nseg.ts\n/abs/seg2.ts'
        once = rewrite_manifest(text, MANIFEST_URL)
        self.assertEqual(rewrite_manifest(once, MANIFEST_URL), once)

    def test_query_string_does_not_affect_directory(self) -> None:
        origin, directory = manifest_base("https://h.example.com/p/index.m3u8?token=a/b/c")
        self.assertEqual(origin, "https://h.example.com")
        self.assertEqual(directory, "https://h.example.com/p/")

    def test_protocol_relative_reference(self) -> None:
        self.assertEqual(
            resolve_reference("//edge.example.com/x.ts", "https://h.example.com", "https://h.example.com/p/"),
            "https://edge.example.com/x.ts",
        )

    def test_wrap_receives_resolved_urls(self) -> None:
        seen = []

        def wrap(url):
            seen.append(url)
            return "proxied:" + url

        out = rewrite_manifest('#EXT-X-KEY:URI="k.key"\nseg.ts', MANIFEST_URL, wrap=wrap)
        self.assertEqual(
            seen,
            [
                "https://cdn.example.com/live/stream/k.key",
                "https://cdn.example.com/live/stream/seg.ts",
            ],
        )
        self.assertEqual(out.split("\n")[1], "proxied:https://cdn.example.com/live/stream/seg.ts")

    def test_invalid_base_url_raises(self) -> None:
        with self.assertRaises(ManifestRewriteError):
            rewrite_manifest("seg.ts", "not a url")
        with self.assertRaises(ValueError):
            manifest_base("ftp://host/x.m3u8")


if __name__ == "__main__":
    unittest.main()
