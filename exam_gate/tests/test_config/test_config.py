"""
Unit tests for configuration, signed policy loading and the audit logger.
"""

import json

import pytest


def _manager(tmp_path):
    from exam_gate.app.config import ConfigManager

    manager = ConfigManager(load_env=False)
    manager.config.data_dir = tmp_path
    return manager


class TestClampInterval:
    """Tests for re-verification interval validation."""

    @pytest.mark.parametrize("minutes", [1, 15, 37, 60])
    def test_in_range_kept(self, tmp_path, minutes):
        assert _manager(tmp_path).clamp_interval(minutes) == minutes

    @pytest.mark.parametrize("minutes", [0, -5, 61, 240])
    def test_out_of_range_uses_default(self, tmp_path, minutes):
        assert _manager(tmp_path).clamp_interval(minutes) == 15

    @pytest.mark.parametrize("minutes", [None, "15", 15.5, True])
    def test_non_integer_uses_default(self, tmp_path, minutes):
        assert _manager(tmp_path).clamp_interval(minutes) == 15


class TestPolicyLoading:
    """Tests for signed policy files."""

    def test_missing_policy_uses_defaults(self, tmp_path):
        """Test no policy file leaves defaults in place."""
        manager = _manager(tmp_path)

        assert manager.load_policy() is False
        assert manager.config.verification.MATCH_THRESHOLD == 0.6

    def test_unsigned_policy_applied_without_key(self, tmp_path):
        """Test an unsigned policy is accepted when no key is configured."""
        manager = _manager(tmp_path)
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({
            "verification": {"match_threshold": 0.5, "max_consecutive_mismatches": 3}
        }))

        assert manager.load_policy(path) is True
        assert manager.config.verification.MATCH_THRESHOLD == 0.5
        assert manager.config.verification.MAX_CONSECUTIVE_MISMATCHES == 3
        assert manager.config.policy_verified is False

    def test_malformed_policy_rejected(self, tmp_path):
        """Test invalid JSON is rejected."""
        manager = _manager(tmp_path)
        path = tmp_path / "policy.json"
        path.write_text("{not json")

        assert manager.load_policy(path) is False

    def test_default_policy_round_trip(self, tmp_path):
        """Test the generated default policy can be loaded back."""
        manager = _manager(tmp_path)
        path = tmp_path / "policy.json"
        path.write_text(json.dumps(manager.get_default_policy()))

        assert manager.load_policy(path) is True
        assert manager.config.verification.DEFAULT_INTERVAL_MINUTES == 15


class TestPolicySignature:
    """Tests for RSA policy signatures."""

    @pytest.fixture
    def keypair(self):
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric import rsa

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        public_pem = private_key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return private_key, public_pem

    @staticmethod
    def _sign(private_key, payload):
        from cryptography.hazmat.primitives import hashes
        from cryptography.hazmat.primitives.asymmetric import padding

        data = json.dumps(payload, sort_keys=True).encode()
        signature = private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        return dict(payload, signature=signature.hex())

    def test_valid_signature_applied(self, tmp_path, keypair):
        """Test a correctly signed policy is verified and applied."""
        private_key, public_pem = keypair
        manager = _manager(tmp_path)
        manager.config.policy_public_key = public_pem

        path = tmp_path / "policy.json"
        path.write_text(json.dumps(self._sign(private_key, {"verification": {"match_threshold": 0.55}})))

        assert manager.load_policy(path) is True
        assert manager.config.policy_verified is True
        assert manager.config.verification.MATCH_THRESHOLD == 0.55

    def test_tampered_policy_rejected(self, tmp_path, keypair):
        """Test a modified policy fails verification."""
        private_key, public_pem = keypair
        manager = _manager(tmp_path)
        manager.config.policy_public_key = public_pem

        signed = self._sign(private_key, {"verification": {"match_threshold": 0.55}})
        signed["verification"]["match_threshold"] = 0.99
        path = tmp_path / "policy.json"
        path.write_text(json.dumps(signed))

        assert manager.load_policy(path) is False
        assert manager.config.verification.MATCH_THRESHOLD == 0.6

    def test_unsigned_policy_rejected_with_key(self, tmp_path, keypair):
        """Test an unsigned policy is refused once a key is configured."""
        _, public_pem = keypair
        manager = _manager(tmp_path)
        manager.config.policy_public_key = public_pem

        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"verification": {"match_threshold": 0.9}}))

        assert manager.load_policy(path) is False
        assert manager.config.verification.MATCH_THRESHOLD == 0.6


class TestEnvironment:
    """Tests for environment-driven settings."""

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Test API URL, data dir and camera index come from the environment."""
        from exam_gate.app.config import ConfigManager

        monkeypatch.setenv("EXAM_API_URL", "https://exam.example.com")
        monkeypatch.setenv("EXAM_GATE_HOME", str(tmp_path / "home"))
        monkeypatch.setenv("CAMERA_INDEX", "2")
        monkeypatch.setenv("DEBUG", "true")

        config = ConfigManager().config

        assert config.api.base_url == "https://exam.example.com"
        assert config.audit_file == tmp_path / "home" / "audit.log"
        assert config.camera_index == 2
        assert config.debug_mode is True
        assert (tmp_path / "home").is_dir()


class TestAuditLogger:
    """Tests for the audit trail."""

    def test_log_event_hash(self, tmp_path):
        """Test events carry a short integrity hash and reach the file."""
        from exam_gate.app.utils.logger import AuditLogger

        audit_file = tmp_path / "audit.log"
        audit = AuditLogger(audit_file)
        event = audit.log_event(
            action="FACE_VERIFICATION",
            entity="exam_session",
            entity_id="abc",
            evidence={"result": "verified"}
        )

        for handler in audit.logger.handlers:
            handler.flush()

        assert len(event["hash"]) == 16
        assert "FACE_VERIFICATION" in audit_file.read_text()

    def test_events_are_chained(self, tmp_path):
        """Test each event links to the previous one and the file replays."""
        from exam_gate.app.utils.logger import GENESIS_HASH, AuditLogger, verify_chain

        audit_file = tmp_path / "chain.log"
        audit = AuditLogger(audit_file)
        first = audit.log_event(action="FACE_VERIFICATION", entity="exam_session")
        second = audit.log_event(action="EXAM_STARTED", entity="exam_session")

        for handler in audit.logger.handlers:
            handler.flush()

        assert (first["seq"], second["seq"]) == (1, 2)
        assert first["prev_hash"] == GENESIS_HASH
        assert second["prev_hash"] == first["hash"]

        replayed = [json.loads(line) for line in audit_file.read_text().splitlines()]
        assert verify_chain(replayed) is True

    def test_tampered_event_breaks_chain(self, tmp_path):
        """Test editing or dropping an event is detected."""
        from exam_gate.app.utils.logger import AuditLogger, verify_chain

        audit = AuditLogger(tmp_path / "tamper.log")
        events = [
            audit.log_event(action="FACE_VERIFICATION", entity="exam_session",
                            evidence={"result": result})
            for result in ("failed", "failed", "verified")
        ]

        edited = [dict(e) for e in events]
        edited[1]["evidence"] = {"result": "verified"}

        assert verify_chain(events) is True
        assert verify_chain(edited) is False
        assert verify_chain([events[0], events[2]]) is False

    def test_chain_continues_across_restarts(self, tmp_path):
        """Test a new logger on an existing file links to its last event."""
        from exam_gate.app.utils.logger import AuditLogger, verify_chain

        audit_file = tmp_path / "restart.log"
        first_run = AuditLogger(audit_file)
        last = first_run.log_event(action="EXAM_STARTED", entity="exam_session")
        for handler in first_run.logger.handlers:
            handler.flush()

        second_run = AuditLogger(audit_file)
        event = second_run.log_event(action="EXAM_SUBMITTED", entity="exam_session")
        for handler in second_run.logger.handlers:
            handler.flush()

        assert event["seq"] == 2
        assert event["prev_hash"] == last["hash"]
        replayed = [json.loads(line) for line in audit_file.read_text().splitlines()]
        assert verify_chain(replayed) is True

    def test_biometric_evidence_redacted(self, tmp_path):
        """Test descriptor values never reach the audit file."""
        from exam_gate.app.utils.logger import AuditLogger

        audit_file = tmp_path / "redact.log"
        audit = AuditLogger(audit_file)
        event = audit.log_event(
            action="ENROLLMENT",
            entity="learner",
            evidence={"faceDescriptor": [0.123456] * 128, "result": "enrolled"}
        )

        for handler in audit.logger.handlers:
            handler.flush()

        assert event["evidence"]["faceDescriptor"] == "<redacted>"
        assert event["evidence"]["result"] == "enrolled"
        assert "0.123456" not in audit_file.read_text()


class TestSetupLogging:
    """Tests for application log configuration."""

    def test_repeat_setup_does_not_stack_handlers(self, tmp_path):
        """Test calling setup twice leaves one console and one file handler."""
        import logging

        from exam_gate.app.utils.logger import setup_logging

        root = logging.getLogger()
        before = len(root.handlers)

        setup_logging(tmp_path / "first.log")
        setup_logging(tmp_path / "second.log")

        try:
            assert len(root.handlers) == before + 2
        finally:
            from exam_gate.app.utils import logger as logger_module
            for handler in list(logger_module._installed_handlers):
                root.removeHandler(handler)
                handler.close()
            logger_module._installed_handlers.clear()

    def test_json_line_format(self):
        """Test log records render as single-line JSON with a location."""
        import logging

        from exam_gate.app.utils.logger import JSONFormatter

        record = logging.LogRecord(
            "exam_gate.test", logging.WARNING, "/tmp/mod.py", 42, "camera %s busy", ("0",), None,
            func="grab"
        )
        line = JSONFormatter().format(record)
        data = json.loads(line)

        assert data["message"] == "camera 0 busy"
        assert data["level"] == "WARNING"
        assert data["where"] == "mod.grab:42"
        assert "\n" not in line


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
