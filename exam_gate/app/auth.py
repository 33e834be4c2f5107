"""
Exam Gate - Authentication Module

Handles learner login and registration-time face enrollment.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from exam_gate.app.ai.descriptor import NotFound
from exam_gate.app.ai.face_extractor import (
    DescriptorExtractor, ImageSource, get_descriptor_extractor
)
from exam_gate.app.errors import ApiError, ModelLoadError
from exam_gate.app.storage.exam_api_client import ExamApiClient

logger = logging.getLogger(__name__)

ROLES = ("admin", "student")


@dataclass
class AuthResult:
    """Authentication result."""
    success: bool
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    token: Optional[str] = None
    error: Optional[str] = None


class Authenticator:
    """
    Handles learner authentication and enrollment.

    Enrollment flow:
    1. Extract a face descriptor from the uploaded photo
    2. Refuse registration if no face is found
    3. Submit account fields with the descriptor as a plain number array
    4. Keep the returned bearer token on the API client
    5. Log the attempt to the audit trail
    """

    def __init__(
        self,
        client: ExamApiClient,
        extractor: Optional[DescriptorExtractor] = None,
        audit=None
    ):
        """
        Initialize authenticator.

        Args:
            client: Exam API client
            extractor: Descriptor extractor (uses global if None)
            audit: Audit logger (uses global if None)
        """
        self.client = client
        self.extractor = extractor or get_descriptor_extractor()
        if audit is None:
            from exam_gate.app.utils.logger import get_audit_logger
            audit = get_audit_logger()
        self.audit = audit

    async def login(self, identifier: str, password: str) -> AuthResult:
        """
        Log in by username/email and password.

        Args:
            identifier: Username or email
            password: Account password

        Returns:
            AuthResult; on success the client carries the bearer token
        """
        if not identifier or not password:
            return AuthResult(success=False, error="ID and password are required")

        try:
            body = await self.client.login(identifier, password)
        except ApiError as e:
            self._log_auth_attempt("LOGIN_ATTEMPT", identifier, False, str(e))
            return AuthResult(success=False, error=f"Login failed: {e}")

        token = body.get("token")
        if not token:
            self._log_auth_attempt("LOGIN_ATTEMPT", identifier, False, "No token in response")
            return AuthResult(success=False, error="Login failed: no token returned")

        self.client.set_token(token)
        self._log_auth_attempt("LOGIN_ATTEMPT", identifier, True)
        return self._result_from_body(body, token)

    async def enroll(
        self,
        username: str,
        email: str,
        password: str,
        photo: ImageSource,
        role: str = "student"
    ) -> AuthResult:
        """
        Register an account together with its reference face.

        Args:
            username: Account username
            email: Account email
            password: Account password
            photo: Uploaded face photo (path, bytes or frame)
            role: "student" or "admin"

        Returns:
            AuthResult with the new account, or the reason registration failed
        """
        if not username or not email or not password:
            return AuthResult(success=False, error="Username, email and password are required")

        if role not in ROLES:
            return AuthResult(success=False, error=f"Invalid role: {role}")

        try:
            extracted = await self.extractor.extract_async(photo)
        except ModelLoadError as e:
            logger.error(f"Enrollment unavailable: {e}")
            return AuthResult(success=False, error="Face models could not be loaded")

        if isinstance(extracted, NotFound):
            self._log_auth_attempt("ENROLLMENT", username, False, extracted.reason)
            return AuthResult(success=False, error="No face detected in the uploaded photo")

        try:
            body = await self.client.register(
                username=username,
                email=email,
                password=password,
                face_descriptor=extracted.to_list(),
                role=role
            )
        except ApiError as e:
            self._log_auth_attempt("ENROLLMENT", username, False, str(e))
            return AuthResult(success=False, error=f"Registration failed: {e}")

        token = body.get("token")
        if token:
            self.client.set_token(token)

        self._log_auth_attempt("ENROLLMENT", username, True)
        return self._result_from_body(body, token)

    @staticmethod
    def _result_from_body(body: dict, token: Optional[str]) -> AuthResult:
        user = body.get("user") or {}
        return AuthResult(
            success=True,
            user_id=user.get("id"),
            username=user.get("username"),
            email=user.get("email"),
            role=user.get("role"),
            token=token,
        )

    def _log_auth_attempt(
        self,
        action: str,
        identifier: str,
        success: bool,
        reason: Optional[str] = None
    ):
        """Log authentication attempt to audit trail."""
        self.audit.log_event(
            action=action,
            entity="account",
            evidence={
                "identifier": identifier,
                "success": success,
                "reason": reason,
            }
        )
