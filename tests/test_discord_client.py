import unittest
from unittest.mock import patch


class _StubResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _StubSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.headers = {}
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _client(responses):
    from forumsync.services.discord_client import DiscordClient

    session = _StubSession(responses)
    return DiscordClient("bot-token", api_url="https://discord.test/api", session=session), session


class DiscordClientTests(unittest.TestCase):
    def test_bot_authorization_header(self):
        _, session = _client([])
        self.assertEqual(session.headers["Authorization"], "Bot bot-token")

    def test_first_message_not_yet_available(self):
        client, session = _client([_StubResponse(status_code=404, text="Unknown Message")])

        self.assertIsNone(client.get_first_message("1001"))
        self.assertEqual(session.calls[0][:2], ("GET", "https://discord.test/api/channels/1001/messages/1001"))

    def test_first_message_with_attachments(self):
        client, _ = _client(
            [
                _StubResponse(
                    payload={
                        "id": "1001",
                        "content": "Please add a dark theme",
                        "attachments": [
                            {"url": "https://cdn/shot.png", "filename": "shot.png"},
                            {"filename": "no-url.bin"},
                        ],
                    }
                )
            ]
        )

        message = client.get_first_message(1001)

        self.assertEqual(message.content, "Please add a dark theme")
        self.assertEqual([(a.url, a.filename) for a in message.attachments], [("https://cdn/shot.png", "shot.png")])

    def test_create_message_truncates_and_returns_id(self):
        from forumsync.services.discord_client import MAX_MESSAGE_LENGTH

        client, session = _client([_StubResponse(payload={"id": 555})])

        message_id = client.create_message("1001", "x" * 2500)

        self.assertEqual(message_id, "555")
        method, url, kwargs = session.calls[0]
        self.assertEqual((method, url), ("POST", "https://discord.test/api/channels/1001/messages"))
        self.assertEqual(len(kwargs["json"]["content"]), MAX_MESSAGE_LENGTH)
        self.assertEqual(kwargs["json"]["allowed_mentions"], {"parse": []})

    def test_rate_limit_is_retried_after_delay(self):
        client, session = _client(
            [
                _StubResponse(status_code=429, payload={"retry_after": 1.5}),
                _StubResponse(payload={"id": "42"}),
            ]
        )

        with patch("forumsync.services.discord_client.time.sleep") as sleep:
            self.assertEqual(client.create_message("1001", "hi"), "42")

        sleep.assert_called_once_with(1.5)
        self.assertEqual(len(session.calls), 2)

    def test_server_error_on_post_is_not_replayed(self):
        from forumsync.errors import RemoteAPIError

        client, session = _client([_StubResponse(status_code=502, text="bad gateway")] * 3)

        with patch("forumsync.services.discord_client.time.sleep"):
            with self.assertRaises(RemoteAPIError) as ctx:
                client.create_message("1001", "hi")

        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(len(session.calls), 1)

    def test_read_timeout_on_post_is_not_replayed(self):
        import requests

        from forumsync.errors import RemoteAPIError

        # Discord stored the message, but the response never arrived.
        client, session = _client([requests.ReadTimeout("read timed out"), _StubResponse(payload={"id": "2"})])

        with patch("forumsync.services.discord_client.time.sleep"):
            with self.assertRaises(RemoteAPIError):
                client.create_message("1001", "hello")

        self.assertEqual(len(session.calls), 1)

    def test_connect_timeout_on_post_is_retried(self):
        import requests

        client, session = _client([requests.ConnectTimeout("connect timed out"), _StubResponse(payload={"id": "7"})])

        with patch("forumsync.services.discord_client.time.sleep"):
            self.assertEqual(client.create_message("1001", "hello"), "7")

        self.assertEqual(len(session.calls), 2)

    def test_server_error_on_read_is_retried(self):
        client, session = _client(
            [
                _StubResponse(status_code=503, text="unavailable"),
                _StubResponse(payload={"threads": []}),
            ]
        )

        with patch("forumsync.services.discord_client.time.sleep"):
            self.assertEqual(client.get_active_threads(900), [])

        self.assertEqual(len(session.calls), 2)

    def test_each_thread_gets_its_own_session(self):
        import threading

        from forumsync.services.discord_client import DiscordClient

        client = DiscordClient("bot-token")
        main_session = client.session
        seen = []
        worker = threading.Thread(target=lambda: seen.append(client.session))
        worker.start()
        worker.join()

        self.assertIs(client.session, main_session)
        self.assertIsNot(seen[0], main_session)
        self.assertEqual(seen[0].headers["Authorization"], "Bot bot-token")

    def test_active_threads_parsed(self):
        client, _ = _client(
            [
                _StubResponse(
                    payload={
                        "threads": [
                            {"id": "20", "parent_id": "500", "name": "B", "applied_tags": [77]},
                            {"id": "10", "parent_id": None, "name": "A"},
                        ]
                    }
                )
            ]
        )

        threads = client.get_active_threads(900)

        self.assertEqual([(t.id, t.parent_id) for t in threads], [("20", "500"), ("10", None)])
        self.assertEqual(threads[0].applied_tags, ["77"])


class TruncateMessageTests(unittest.TestCase):
    def test_short_content_untouched(self):
        from forumsync.services.discord_client import truncate_message

        self.assertEqual(truncate_message("hello"), "hello")

    def test_long_content_ends_with_ellipsis(self):
        from forumsync.services.discord_client import truncate_message

        result = truncate_message("abcdef", limit=4)
        self.assertEqual(result, "abc…")


if __name__ == "__main__":
    unittest.main()
