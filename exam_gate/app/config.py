"""
Exam Gate - Configuration Management

Handles loading of signed policy configuration and environment variables.
Verification thresholds are configurable via server-provided signed policy.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Optional
from pathlib import Path
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.exceptions import InvalidSignature

logger = logging.getLogger(__name__)


@dataclass
class VerificationConfig:
    """Face verification thresholds - configurable via policy"""
    # Matching
    MATCH_THRESHOLD: float = 0.6  # Euclidean distance, lower = stricter
    DESCRIPTOR_LENGTH: int = 128  # dlib ResNet embedding size

    # Extraction
    DETECTION_MODEL: str = "hog"  # "hog" (CPU) or "cnn" (GPU)
    UPSAMPLE_TIMES: int = 1
    NUM_JITTERS: int = 1
    LANDMARK_MODEL: str = "large"  # 68-point alignment

    # Retry lockout
    MAX_CONSECUTIVE_MISMATCHES: int = 5

    # Re-verification interval (minutes)
    DEFAULT_INTERVAL_MINUTES: int = 15
    MIN_INTERVAL_MINUTES: int = 1
    MAX_INTERVAL_MINUTES: int = 60

    # Scheduler
    SCHEDULER_POLL_SECONDS: float = 1.0


@dataclass
class ApiConfig:
    """Exam platform backend configuration"""
    base_url: str = "http://localhost:4000"
    token: str = ""
    timeout_seconds: float = 30.0


@dataclass
class AppConfig:
    """Main application configuration"""
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    # Paths
    data_dir: Path = field(default_factory=lambda: Path.home() / ".exam_gate")
    log_file: Path = field(default_factory=lambda: Path.home() / ".exam_gate" / "app.log")
    audit_file: Path = field(default_factory=lambda: Path.home() / ".exam_gate" / "audit.log")

    # Policy
    policy_public_key: Optional[bytes] = None
    policy_verified: bool = False

    # Runtime
    debug_mode: bool = False
    camera_index: int = 0


class ConfigManager:
    """Manages loading and verification of configuration"""

    def __init__(self, load_env: bool = True):
        self.config = AppConfig()
        if load_env:
            self._load_environment()
            self._ensure_directories()

    def _load_environment(self):
        """Load configuration from environment variables"""
        from dotenv import load_dotenv
        load_dotenv()

        self.config.api.base_url = os.getenv("EXAM_API_URL", self.config.api.base_url)
        self.config.api.token = os.getenv("EXAM_API_TOKEN", "")
        self.config.api.timeout_seconds = float(
            os.getenv("EXAM_API_TIMEOUT", str(self.config.api.timeout_seconds))
        )

        data_dir = os.getenv("EXAM_GATE_HOME")
        if data_dir:
            self.config.data_dir = Path(data_dir)
            self.config.log_file = self.config.data_dir / "app.log"
            self.config.audit_file = self.config.data_dir / "audit.log"

        key_path = os.getenv("POLICY_PUBLIC_KEY_PATH")
        if key_path and Path(key_path).exists():
            self.config.policy_public_key = Path(key_path).read_bytes()

        self.config.debug_mode = os.getenv("DEBUG", "false").lower() == "true"
        self.config.camera_index = int(os.getenv("CAMERA_INDEX", "0"))

        logger.info(f"Loaded configuration: API URL = {self.config.api.base_url}")

    def _ensure_directories(self):
        """Create necessary directories"""
        self.config.data_dir.mkdir(parents=True, exist_ok=True)

    def load_policy(self, policy_path: Optional[Path] = None) -> bool:
        """
        Load and verify signed policy file.

        Returns True if policy is valid and applied.
        """
        if policy_path is None:
            policy_path = self.config.data_dir / "policy.json"

        if not policy_path.exists():
            logger.warning("No policy file found, using defaults")
            return False

        try:
            with open(policy_path, "r") as f:
                policy_data = json.load(f)

            if self.config.policy_public_key:
                if "signature" not in policy_data:
                    logger.error("Policy is unsigned but a public key is configured")
                    return False
                if not self._verify_policy_signature(policy_data):
                    logger.error("Policy signature verification failed!")
                    return False
                self.config.policy_verified = True

            if "verification" in policy_data:
                self._apply_verification(policy_data["verification"])

            logger.info("Policy loaded successfully")
            return True

        except (OSError, ValueError) as e:
            logger.error(f"Failed to load policy: {e}")
            return False

    def _verify_policy_signature(self, policy_data: dict) -> bool:
        """Verify RSA signature of policy data"""
        try:
            signature = bytes.fromhex(policy_data["signature"])

            payload = {k: v for k, v in policy_data.items() if k != "signature"}
            payload_bytes = json.dumps(payload, sort_keys=True).encode()

            public_key = serialization.load_pem_public_key(self.config.policy_public_key)

            public_key.verify(
                signature,
                payload_bytes,
                padding.PKCS1v15(),
                hashes.SHA256()
            )
            return True

        except InvalidSignature:
            return False
        except (ValueError, TypeError) as e:
            logger.error(f"Signature verification error: {e}")
            return False

    def _apply_verification(self, values: dict):
        """Apply verification values from policy"""
        mapping = {
            "match_threshold": "MATCH_THRESHOLD",
            "detection_model": "DETECTION_MODEL",
            "upsample_times": "UPSAMPLE_TIMES",
            "num_jitters": "NUM_JITTERS",
            "max_consecutive_mismatches": "MAX_CONSECUTIVE_MISMATCHES",
            "default_interval_minutes": "DEFAULT_INTERVAL_MINUTES",
        }

        for policy_key, config_attr in mapping.items():
            if policy_key in values:
                setattr(self.config.verification, config_attr, values[policy_key])

    def get_default_policy(self) -> dict:
        """Generate default policy JSON for reference"""
        v = self.config.verification
        return {
            "verification": {
                "match_threshold": v.MATCH_THRESHOLD,
                "detection_model": v.DETECTION_MODEL,
                "upsample_times": v.UPSAMPLE_TIMES,
                "num_jitters": v.NUM_JITTERS,
                "max_consecutive_mismatches": v.MAX_CONSECUTIVE_MISMATCHES,
                "default_interval_minutes": v.DEFAULT_INTERVAL_MINUTES,
            }
        }

    def clamp_interval(self, minutes: Optional[int]) -> int:
        """
        Validate an admin-configured re-verification interval.

        Values outside MIN..MAX (or missing/non-integer) fall back to the
        configured default.
        """
        v = self.config.verification
        if isinstance(minutes, bool) or not isinstance(minutes, int):
            return v.DEFAULT_INTERVAL_MINUTES
        if not v.MIN_INTERVAL_MINUTES <= minutes <= v.MAX_INTERVAL_MINUTES:
            logger.warning(
                f"Interval {minutes} min outside "
                f"{v.MIN_INTERVAL_MINUTES}-{v.MAX_INTERVAL_MINUTES}, using default"
            )
            return v.DEFAULT_INTERVAL_MINUTES
        return minutes


# Global config instance
_config_manager: Optional[ConfigManager] = None


def get_config() -> AppConfig:
    """Get the global configuration instance"""
    return get_config_manager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance"""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager
