"""BrowserOAuthFlowのユニットテスト"""

import asyncio
import time
import unittest
from urllib.parse import parse_qs, urlparse

import httpx
import jwt

from agentlink.auth.base import OAuthContext
from agentlink.auth.browser import BrowserOAuthFlow, codex_context, extract_code
from agentlink.errors import ErrorCode, OAuthExchangeFailed
from agentlink.models import Credential


class InMemoryCredentialStore:
    def __init__(self):
        self.credentials = {}

    def get_credential(self, slug):
        return self.credentials.get(slug)

    def set_credential(self, slug, credential):
        self.credentials[slug] = credential

    def delete_credential(self, slug):
        self.credentials.pop(slug, None)


class RecordingOpener:
    def __init__(self):
        self.urls = []

    async def open(self, url):
        self.urls.append(url)


class TestExtractCode(unittest.TestCase):
    def test_raw_code(self):
        self.assertEqual(extract_code("  abc123  "), ("abc123", None))

    def test_code_with_state(self):
        self.assertEqual(extract_code("abc123#xyz"), ("abc123", "xyz"))

    def test_callback_url(self):
        url = "http://localhost:1455/auth/callback?code=abc123&state=xyz"
        self.assertEqual(extract_code(url), ("abc123", "xyz"))

    def test_invalid_inputs(self):
        self.assertIsNone(extract_code(""))
        self.assertIsNone(extract_code("#state-only"))
        self.assertIsNone(extract_code("https://example.com/?error=denied"))


class TestBrowserOAuthFlow(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = InMemoryCredentialStore()
        self.opener = RecordingOpener()
        self.requests = []
        self.token_response = httpx.Response(
            200,
            json={"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600},
        )

    def _flow(self, context=None):
        def handler(request):
            self.requests.append(request)
            return self.token_response

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.aclose)
        return BrowserOAuthFlow(
            context or codex_context(),
            self.store,
            opener=self.opener,
            http_client=client,
        )

    async def test_start_opens_pkce_url(self):
        flow = self._flow()
        url = await flow.start_authorization()

        self.assertEqual(self.opener.urls, [url])
        query = parse_qs(urlparse(url).query)
        self.assertEqual(query["code_challenge_method"], ["S256"])
        self.assertEqual(query["response_type"], ["code"])
        self.assertIn("state", query)
        self.assertTrue(flow.is_waiting_for_code)

    async def test_submit_code_stores_credential(self):
        flow = self._flow()
        await flow.start_authorization()
        before = int(time.time())

        result = await flow.submit_code("auth-code", "chatgpt-plus")

        self.assertTrue(result.success)
        stored = self.store.get_credential("chatgpt-plus")
        self.assertEqual(stored.oauth_access_token, "access-1")
        self.assertEqual(stored.oauth_refresh_token, "refresh-1")
        self.assertGreaterEqual(stored.expires_at, before + 3600)
        form = parse_qs(self.requests[0].content.decode())
        self.assertEqual(form["grant_type"], ["authorization_code"])
        self.assertEqual(form["code"], ["auth-code"])
        self.assertIn("code_verifier", form)
        self.assertFalse(flow.is_waiting_for_code)

    async def test_expiry_falls_back_to_jwt_claim(self):
        exp = int(time.time()) + 600
        token = jwt.encode({"exp": exp, "sub": "user"}, "test-signing-key-with-enough-length-000", algorithm="HS256")
        self.token_response = httpx.Response(200, json={"access_token": token})
        flow = self._flow()
        await flow.start_authorization()

        result = await flow.submit_code("auth-code", "chatgpt-plus")

        self.assertTrue(result.success)
        self.assertEqual(self.store.get_credential("chatgpt-plus").expires_at, exp)

    async def test_submit_before_start_fails(self):
        flow = self._flow()
        result = await flow.submit_code("auth-code", "chatgpt-plus")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, ErrorCode.OAUTH_EXCHANGE_FAILED.value)
        self.assertEqual(self.requests, [])

    async def test_state_mismatch_is_rejected(self):
        flow = self._flow()
        await flow.start_authorization()

        result = await flow.submit_code("auth-code#other-state", "chatgpt-plus")

        self.assertFalse(result.success)
        self.assertEqual(self.requests, [])

    async def test_exchange_error_persists_nothing(self):
        self.token_response = httpx.Response(400, json={"error": "invalid_grant"})
        flow = self._flow()
        await flow.start_authorization()

        result = await flow.submit_code("auth-code", "chatgpt-plus")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, ErrorCode.OAUTH_EXCHANGE_FAILED.value)
        self.assertIsNone(self.store.get_credential("chatgpt-plus"))
        self.assertTrue(flow.is_waiting_for_code)

    async def test_cancel_discards_pending_state(self):
        flow = self._flow()
        await flow.start_authorization()
        flow.cancel()

        result = await flow.submit_code("auth-code", "chatgpt-plus")

        self.assertFalse(result.success)
        self.assertEqual(self.store.credentials, {})

    async def test_cancel_during_exchange_stores_nothing(self):
        """トークン交換の途中でキャンセルされたら保存しない"""
        exchange_started = asyncio.Event()
        release = asyncio.Event()

        async def handler(request):
            self.requests.append(request)
            exchange_started.set()
            await release.wait()
            return self.token_response

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.aclose)
        flow = BrowserOAuthFlow(codex_context(), self.store, opener=self.opener, http_client=client)
        await flow.start_authorization()

        exchange = asyncio.create_task(flow.submit_code("auth-code", "chatgpt-plus"))
        await exchange_started.wait()
        flow.cancel()
        release.set()
        result = await exchange

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, ErrorCode.CONN_CANCELLED.value)
        self.assertEqual(self.store.credentials, {})
        self.assertFalse(flow.is_waiting_for_code)

    async def test_missing_client_id_fails_to_start(self):
        flow = self._flow(OAuthContext(auth_url="https://auth.example.com", token_url="https://auth.example.com/token"))
        with self.assertRaises(OAuthExchangeFailed):
            await flow.start_authorization()
        self.assertEqual(self.opener.urls, [])


class TestCredentialRepr(unittest.TestCase):
    def test_tokens_are_redacted(self):
        text = repr(Credential(api_key="sk-secret-1234", oauth_access_token="token"))
        self.assertNotIn("sk-secret", text)
        self.assertIn("<redacted>", text)
        self.assertIn("***1234", text)


if __name__ == "__main__":
    unittest.main()
