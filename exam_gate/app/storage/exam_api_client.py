"""
Exam Gate - Exam Platform API Client

Async JSON-over-HTTPS client for the e-learning backend: face verification,
exam eligibility, exam settings, login and registration.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import httpx

from exam_gate.app.ai.descriptor import FaceDescriptor
from exam_gate.app.config import ApiConfig, get_config
from exam_gate.app.errors import NetworkError, ServerError

logger = logging.getLogger(__name__)


@dataclass
class VerifyResponse:
    """Backend answer to a verification submission."""
    success: bool
    message: str = ""
    distance: Optional[float] = None


class ExamApiClient:
    """
    REST client for the exam platform backend.

    Transport failures raise NetworkError; unexpected statuses and malformed
    bodies raise ServerError. A 401 from the verification endpoint that
    carries the comparison distance is a mismatch, not an error; any other
    401 (expired or missing token) is a ServerError.
    """

    VERIFY_FACE_PATH = "/api/student/exams/verify-face"
    ELIGIBILITY_PATH = "/api/courses/exam-eligibility"
    EXAM_SETTINGS_PATH = "/api/exam/settings"
    LOGIN_PATH = "/api/auth/login"
    REGISTER_PATH = "/api/auth/register"

    def __init__(
        self,
        config: Optional[ApiConfig] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if config is None:
            config = get_config().api

        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.token = token if token is not None else config.token

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    def set_token(self, token: str):
        """Set the bearer token used for authenticated calls."""
        self.token = token

    def _default_headers(self) -> Dict[str, str]:
        """Get default headers for API requests."""
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Dict[str, Any]]:
        """Send a request and decode its JSON body."""
        try:
            response = await self._client.request(
                method, path, json=json, headers=self._default_headers()
            )
        except httpx.TransportError as e:
            logger.error(f"{method} {path} transport error: {e!r}")
            raise NetworkError(f"Could not reach {self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e!r}")
            raise ServerError(f"Bad response from {path}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            logger.error(f"{method} {path} returned non-JSON body ({response.status_code})")
            raise ServerError(
                f"Malformed response from {path}", status_code=response.status_code
            )

        return response.status_code, body

    @staticmethod
    def _raise_for_status(path: str, status: int, body: Dict[str, Any]):
        if 200 <= status < 300:
            return
        message = body.get("message") or f"HTTP {status}"
        logger.error(f"{path} failed: {status} - {message}")
        raise ServerError(message, status_code=status)

    # ==================== EXAM OPERATIONS ====================

    async def verify_face(self, descriptor: FaceDescriptor) -> VerifyResponse:
        """
        Submit a live descriptor for comparison with the enrolled one.

        Args:
            descriptor: Descriptor extracted from the current capture

        Returns:
            VerifyResponse; success=False means the faces did not match
        """
        status, body = await self._request(
            "POST", self.VERIFY_FACE_PATH, json={"faceDescriptor": descriptor.to_list()}
        )

        distance = body.get("distance")
        if isinstance(distance, bool) or not isinstance(distance, (int, float)):
            distance = None

        # A 401 without a distance comes from the auth layer (expired or
        # invalid token), not from the face comparison
        mismatch = (
            (status == 401 and distance is not None)
            or (200 <= status < 300 and not body.get("success"))
        )
        if mismatch:
            return VerifyResponse(
                success=False,
                message=body.get("message", "Face verification failed"),
                distance=distance
            )

        self._raise_for_status(self.VERIFY_FACE_PATH, status, body)
        return VerifyResponse(
            success=True,
            message=body.get("message", ""),
            distance=distance
        )

    async def get_exam_eligibility(self) -> Dict[str, Any]:
        """Fetch `{examEligible, courses: [...]}` for the logged-in learner."""
        status, body = await self._request("GET", self.ELIGIBILITY_PATH)
        self._raise_for_status(self.ELIGIBILITY_PATH, status, body)
        if not isinstance(body.get("courses", []), list):
            raise ServerError("Eligibility response has no course list", status_code=status)
        return body

    async def get_exam_settings(self) -> Dict[str, Any]:
        """Fetch admin-configured exam settings."""
        status, body = await self._request("GET", self.EXAM_SETTINGS_PATH)
        self._raise_for_status(self.EXAM_SETTINGS_PATH, status, body)
        settings = body.get("settings")
        return settings if isinstance(settings, dict) else {}

    # ==================== ACCOUNT OPERATIONS ====================

    async def login(self, identifier: str, password: str) -> Dict[str, Any]:
        """
        Log in with username/email and password.

        Returns:
            Response body containing `token` and `user`
        """
        status, body = await self._request(
            "POST", self.LOGIN_PATH, json={"id": identifier, "password": password}
        )
        self._raise_for_status(self.LOGIN_PATH, status, body)
        return body

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        face_descriptor: Sequence[float],
        role: str = "student"
    ) -> Dict[str, Any]:
        """Create an account with its registration-time face descriptor."""
        payload = {
            "username": username,
            "email": email,
            "password": password,
            "role": role,
            "faceDescriptor": list(face_descriptor),
        }
        status, body = await self._request("POST", self.REGISTER_PATH, json=payload)
        self._raise_for_status(self.REGISTER_PATH, status, body)
        return body

    async def aclose(self):
        """Close HTTP client connections."""
        await self._client.aclose()

    async def __aenter__(self) -> "ExamApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
