import unittest

from smartthings_mcp.resource_uri import RESOURCE_SCHEME, decode_resource_uri, encode_resource_uri


class TestResourceUri(unittest.TestCase):
    def test_round_trip(self):
        cases = [
            ("weather", "file:///tmp/report.txt"),
            ("weather", "forecast://city/ber.lin?days=3#today"),
            ("home_hub-2", "urn:device:a.b.c:1"),
            ("x", "note://café/日本語"),
            ("x", "a"),
        ]
        for upstream, uri in cases:
            with self.subTest(uri=uri):
                encoded = encode_resource_uri(upstream, uri)
                self.assertTrue(encoded.startswith(f"{RESOURCE_SCHEME}://{upstream}/"))
                self.assertEqual(decode_resource_uri(encoded), (upstream, uri))

    def test_encoded_payload_is_url_safe(self):
        encoded = encode_resource_uri("weather", "data://ÿþ?>>>")
        payload = encoded.split("/", 3)[3]
        self.assertNotIn("=", payload)
        self.assertRegex(payload, r"^[A-Za-z0-9_-]+$")

    def test_upstream_name_case_is_preserved(self):
        encoded = encode_resource_uri("Weather", "file:///x")
        self.assertEqual(decode_resource_uri(encoded), ("Weather", "file:///x"))

    def test_rejects_malformed(self):
        for uri in [
            "file:///etc/passwd",
            "http://weather/Zm9v",
            "mcp+proxy://",
            "mcp+proxy://weather",
            "mcp+proxy://weather/",
            "mcp+proxy:///Zm9v",
            "mcp+proxy://user@weather/Zm9v",
            "mcp+proxy://weather:80/Zm9v",
            "mcp+proxy://weather/not base64!",
            "mcp+proxy://weather/A",
            "mcp+proxy://weather/__8",
        ]:
            with self.subTest(uri=uri):
                self.assertIsNone(decode_resource_uri(uri))


if __name__ == "__main__":
    unittest.main()
