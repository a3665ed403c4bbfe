import json
import unittest

import httpx

from chatsync.services.password_reset_service import PasswordResetClient, PasswordResetError


def reset_service(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    if request.url.path == "/send-code":
        return httpx.Response(200, json={"message": "Code sent"})
    if request.url.path == "/verify-code":
        if body.get("code") == "123456":
            return httpx.Response(200, json={"valid": True, "message": "Code accepted"})
        return httpx.Response(400, json={"valid": False, "message": "Wrong code"})
    return httpx.Response(404)


class PasswordResetClientTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.requests = []

        def handler(request):
            self.requests.append(request)
            return reset_service(request)

        self.client = PasswordResetClient("http://reset.test", transport=httpx.MockTransport(handler))

    async def test_send_code(self):
        self.assertEqual(await self.client.send_code("  Ana@Example.com "), "Code sent")
        self.assertEqual(json.loads(self.requests[0].content), {"email": "ana@example.com"})

    async def test_verify_code(self):
        self.assertEqual(await self.client.verify_code("ana@example.com", "123456"), "Code accepted")
        with self.assertRaises(PasswordResetError) as ctx:
            await self.client.verify_code("ana@example.com", "000000")
        self.assertEqual(str(ctx.exception), "Wrong code")
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_input_validation(self):
        with self.assertRaises(ValueError):
            await self.client.send_code(" ")
        with self.assertRaises(ValueError):
            await self.client.verify_code("ana@example.com", "")
        self.assertEqual(self.requests, [])

    async def test_unreachable_service(self):
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = PasswordResetClient("http://reset.test", transport=httpx.MockTransport(broken))
        with self.assertRaises(PasswordResetError):
            await client.send_code("ana@example.com")
