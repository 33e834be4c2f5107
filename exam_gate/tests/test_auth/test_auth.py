"""
Unit tests for login and face enrollment.
"""

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import numpy as np
import pytest


class FakeExtractor:
    def __init__(self, result):
        self.result = result

    async def extract_async(self, photo):
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


def _descriptor():
    from exam_gate.app.ai.descriptor import FaceDescriptor
    return FaceDescriptor.from_values(np.full(128, 0.02))


def _run(handler, extractor_result, action):
    """Run `action(authenticator, client)` against a mocked backend."""
    from exam_gate.app.auth import Authenticator
    from exam_gate.app.config import ApiConfig
    from exam_gate.app.storage.exam_api_client import ExamApiClient

    audit = MagicMock()

    async def run():
        async with ExamApiClient(
            config=ApiConfig(base_url="http://exam.test"),
            token="",
            transport=httpx.MockTransport(handler),
        ) as client:
            auth = Authenticator(client, extractor=FakeExtractor(extractor_result), audit=audit)
            result = await action(auth)
            return result, client.token

    result, token = asyncio.run(run())
    return result, token, audit


class TestLogin:
    """Tests for Authenticator.login."""

    def test_login_success_sets_token(self):
        """Test a successful login stores the bearer token."""
        def handler(request):
            return httpx.Response(200, json={
                "token": "jwt-1",
                "user": {"id": "u1", "username": "ana", "email": "ana@example.com", "role": "student"},
            })

        result, token, audit = _run(handler, None, lambda auth: auth.login("ana", "pw"))

        assert result.success is True
        assert result.user_id == "u1"
        assert result.role == "student"
        assert token == "jwt-1"
        assert audit.log_event.call_args.kwargs["action"] == "LOGIN_ATTEMPT"

    def test_login_rejected(self):
        """Test invalid credentials return an error result."""
        def handler(request):
            return httpx.Response(401, json={"message": "Invalid credentials"})

        result, token, _ = _run(handler, None, lambda auth: auth.login("ana", "bad"))

        assert result.success is False
        assert "Invalid credentials" in result.error
        assert token == ""

    def test_missing_fields(self):
        """Test empty credentials are refused locally."""
        def handler(request):
            raise AssertionError("should not be called")

        result, _, _ = _run(handler, None, lambda auth: auth.login("", "pw"))

        assert result.success is False


class TestEnrollment:
    """Tests for registration-time face enrollment."""

    def test_enroll_submits_descriptor(self):
        """Test the extracted descriptor is registered with the account."""
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(201, json={
                "token": "jwt-2",
                "user": {"id": "u2", "username": "ana", "email": "ana@example.com", "role": "student"},
            })

        result, token, _ = _run(
            handler, _descriptor(),
            lambda auth: auth.enroll("ana", "ana@example.com", "pw", b"photo-bytes")
        )

        assert result.success is True
        assert result.user_id == "u2"
        assert token == "jwt-2"
        assert seen["faceDescriptor"] == [0.02] * 128
        assert seen["role"] == "student"

    def test_enroll_without_face_is_refused(self):
        """Test registration is refused when the photo has no face."""
        from exam_gate.app.ai.descriptor import NotFound

        def handler(request):
            raise AssertionError("should not be called")

        result, _, audit = _run(
            handler, NotFound(),
            lambda auth: auth.enroll("ana", "ana@example.com", "pw", b"photo-bytes")
        )

        assert result.success is False
        assert result.error == "No face detected in the uploaded photo"
        assert audit.log_event.call_args.kwargs["evidence"]["success"] is False

    def test_enroll_model_failure(self):
        """Test model load failure is reported, not raised."""
        from exam_gate.app.errors import ModelLoadError

        def handler(request):
            raise AssertionError("should not be called")

        result, _, _ = _run(
            handler, ModelLoadError("no dlib"),
            lambda auth: auth.enroll("ana", "ana@example.com", "pw", b"photo-bytes")
        )

        assert result.success is False
        assert result.error == "Face models could not be loaded"

    def test_enroll_backend_rejects(self):
        """Test a backend rejection (e.g. duplicate user) is surfaced."""
        def handler(request):
            return httpx.Response(400, json={"message": "User already exists"})

        result, _, _ = _run(
            handler, _descriptor(),
            lambda auth: auth.enroll("ana", "ana@example.com", "pw", b"photo-bytes")
        )

        assert result.success is False
        assert "User already exists" in result.error

    def test_invalid_role(self):
        """Test unknown roles are refused."""
        def handler(request):
            raise AssertionError("should not be called")

        result, _, _ = _run(
            handler, _descriptor(),
            lambda auth: auth.enroll("ana", "ana@example.com", "pw", b"x", role="proctor")
        )

        assert result.success is False
        assert "role" in result.error


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
