import base64


class FakeResponse:
    """Minimal stand-in for ``requests.Response`` as the relays use it."""

    def __init__(self, status_code=200, text="", content=None, headers=None, url="", json_data=None):
        self.status_code = status_code
        self.text = text
        self.content = content if content is not None else text.encode("utf-8")
        self.headers = headers or {}
        self.url = url
        self._json = json_data
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json

    def close(self):
        self.closed = True


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")
