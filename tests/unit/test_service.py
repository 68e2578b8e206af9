"""Unit tests for the caller-facing compliance service."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from healthmint_compliance.audit.context import audit_context
from healthmint_compliance.audit.models import DeliveryState
from healthmint_compliance.config import ComplianceConfig, EncryptionConfig, TransportConfig
from healthmint_compliance.errors import (
    DEFAULT_ERROR_POLICY,
    DecryptionError,
    DeliveryError,
    EncryptionError,
    ErrorPolicy,
    ValidationError,
)
from healthmint_compliance.phi.deidentification import DeIdentificationReport
from healthmint_compliance.phi.encryption import FieldCryptographer, KeyManager
from healthmint_compliance.secrets import MaskedSecret
from healthmint_compliance.service import ComplianceService
from healthmint_compliance.transport.http import HttpTransport
from healthmint_compliance.transport.postgres import PostgresTransport


@pytest.fixture
def service(transport, buffer):
    cryptographer = FieldCryptographer(KeyManager(key=os.urandom(32)))
    return ComplianceService(
        transport=transport, buffer=buffer, cryptographer=cryptographer, notifier=MagicMock()
    )


class TestErrorPolicy:
    def test_default_policy(self):
        assert DEFAULT_ERROR_POLICY.is_fatal(ValidationError("bad"))
        assert DEFAULT_ERROR_POLICY.is_fatal(DecryptionError("bad"))
        assert DEFAULT_ERROR_POLICY.is_recoverable(DeliveryError("down"))
        assert not DEFAULT_ERROR_POLICY.is_fatal(DeliveryError("down"))
        assert DEFAULT_ERROR_POLICY.returns_safe_default("sanitize")
        assert not DEFAULT_ERROR_POLICY.returns_safe_default("encrypt")

    def test_error_codes(self):
        assert ValidationError("x").code == "VALIDATION_ERROR"
        assert str(DeliveryError("down")) == "[DELIVERY_ERROR] down"


class TestPHIOperations:
    def test_contains_phi(self, service):
        assert service.contains_phi("SSN 123-45-6789").types == ["ssn"]

    def test_sanitize(self, service):
        result = service.sanitize({"email": "jane.doe@x.com"}, mode="mask")
        assert result == {"email": "j*******e@x.com"}

    def test_verify(self, service):
        report = service.verify_deidentification({"ssn": "123-45-6789"})
        assert report.passes_hipaa is False

    def test_detection_failure_fails_closed(self, service, monkeypatch):
        monkeypatch.setattr(
            service.detector, "contains_phi", MagicMock(side_effect=RuntimeError("boom"))
        )
        result = service.contains_phi("anything")
        assert result.has_phi is False
        assert result.types == []

    def test_sanitize_failure_returns_none(self, service, monkeypatch):
        monkeypatch.setattr(
            service.sanitizer, "sanitize", MagicMock(side_effect=RuntimeError("boom"))
        )
        assert service.sanitize({"name": "Jane"}) is None

    def test_sanitize_bad_mode_returns_none(self, service):
        assert service.sanitize({"name": "Jane"}, mode="scramble") is None

    def test_verify_failure_fails_closed(self, service, monkeypatch):
        monkeypatch.setattr(service.verifier, "verify", MagicMock(side_effect=RuntimeError("boom")))
        assert service.verify_deidentification({}) == DeIdentificationReport.failed_closed()

    def test_strict_policy_propagates(self, transport, buffer, monkeypatch):
        strict = ErrorPolicy(safe_default_operations=frozenset())
        service = ComplianceService(transport=transport, buffer=buffer, policy=strict)
        monkeypatch.setattr(
            service.sanitizer, "sanitize", MagicMock(side_effect=RuntimeError("boom"))
        )
        with pytest.raises(RuntimeError):
            service.sanitize({"name": "Jane"})

    def test_custom_patterns_from_config(self, tmp_path):
        patterns = tmp_path / "patterns.toml"
        patterns.write_text(
            "[[patterns]]\nname = \"member_id\"\npattern = 'MBR\\d{8}'\nseverity = \"high\"\n"
        )
        service = ComplianceService(ComplianceConfig(custom_patterns_path=patterns))
        assert service.contains_phi("MBR12345678").types == ["member_id"]


class TestEncryption:
    def test_round_trip(self, service):
        assert service.decrypt(service.encrypt({"mrn": "A1"})) == {"mrn": "A1"}

    def test_decryption_errors_propagate(self, service):
        with pytest.raises(DecryptionError):
            service.decrypt("v1.AAAA")

    def test_missing_key_propagates(self, no_key_env):
        service = ComplianceService()
        with pytest.raises(EncryptionError):
            service.encrypt("secret")

    def test_server_secret_from_environment(self, monkeypatch, no_key_env):
        monkeypatch.setenv("HEALTHMINT_ENCRYPTION_SECRET", "server-secret")
        service = ComplianceService()
        assert service.decrypt(service.encrypt("x")) == "x"

    def test_installation_seed_from_environment(self, monkeypatch, no_key_env):
        monkeypatch.setenv("HEALTHMINT_ENCRYPTION_SECRET", "server-secret")
        monkeypatch.setenv("HEALTHMINT_INSTALLATION_SEED", "site-7")
        token = ComplianceService().encrypt("x")

        secret = MaskedSecret("server-secret")
        seeded = KeyManager(installation_seed="site-7", server_secret=secret)
        unseeded = KeyManager(server_secret=secret)
        assert FieldCryptographer(seeded).decrypt(token) == "x"
        with pytest.raises(DecryptionError):
            FieldCryptographer(unseeded).decrypt(token)

    def test_configured_seed_wins_over_environment(self, monkeypatch, no_key_env):
        monkeypatch.setenv("HEALTHMINT_ENCRYPTION_SECRET", "server-secret")
        monkeypatch.setenv("HEALTHMINT_INSTALLATION_SEED", "site-7")
        config = ComplianceConfig(encryption=EncryptionConfig(installation_seed="site-1"))
        token = ComplianceService(config).encrypt("x")

        secret = MaskedSecret("server-secret")
        seeded = KeyManager(installation_seed="site-1", server_secret=secret)
        assert FieldCryptographer(seeded).decrypt(token) == "x"

    def test_unexpected_encrypt_failure_becomes_encryption_error(self, service, monkeypatch):
        monkeypatch.setattr(
            service.cryptographer, "encrypt", MagicMock(side_effect=RuntimeError("boom"))
        )
        with pytest.raises(EncryptionError, match="boom") as excinfo:
            service.encrypt("x")
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    def test_unexpected_decrypt_failure_becomes_decryption_error(self, service, monkeypatch):
        error = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        monkeypatch.setattr(service.cryptographer, "decrypt", MagicMock(side_effect=error))
        with pytest.raises(DecryptionError):
            service.decrypt("v1.AAAA")


class TestAuditAndConsent:
    @pytest.mark.asyncio
    async def test_create_audit_log(self, service, transport):
        with audit_context(actor="dr-smith", session_token="tok"):
            result = await service.create_audit_log("PHI_ACCESS", {"recordId": "r-1"})
        assert result.state is DeliveryState.DELIVERED
        assert transport.paths() == ["/audit/log"]

    @pytest.mark.asyncio
    async def test_recoverable_audit_error_becomes_failed_result(self, service, monkeypatch):
        monkeypatch.setattr(
            service.pipeline, "create_audit_log", AsyncMock(side_effect=DeliveryError("down"))
        )
        result = await service.create_audit_log("PHI_ACCESS")
        assert result.success is False
        assert result.state is DeliveryState.CREATED
        assert "down" in result.error

    @pytest.mark.asyncio
    async def test_fatal_audit_error_propagates(self, service):
        with pytest.raises(ValidationError):
            await service.create_audit_log("  ")

    @pytest.mark.asyncio
    async def test_recoverable_consent_error_becomes_failed_result(self, service, monkeypatch):
        monkeypatch.setattr(
            service.consent, "record_consent", AsyncMock(side_effect=DeliveryError("down"))
        )
        result = await service.record_consent("research", True)
        assert result.success is False
        assert result.record is None

    @pytest.mark.asyncio
    async def test_fatal_consent_error_propagates(self, service):
        with pytest.raises(ValidationError):
            await service.record_consent("not-a-consent-type", True)

    @pytest.mark.asyncio
    async def test_consent_round_trip(self, service):
        with audit_context(actor="user-1", session_token="tok"):
            result = await service.record_consent("research", True, purpose="study")
            assert result.persisted_remotely is True
            assert await service.has_consent("research") is True
            assert await service.verify_consent("research") is True
            assert len(await service.get_consent_history("research")) == 1
            decision = await service.validate_data_access("genetic")
        assert decision.requires_consent is True

    @pytest.mark.asyncio
    async def test_pending_entries(self, failing_transport, buffer):
        service = ComplianceService(transport=failing_transport, buffer=buffer)
        with audit_context(actor="dr-smith", session_token="tok"):
            await service.create_audit_log("PHI_ACCESS")
        assert [e.action for e in await service.pending_audit_entries()] == ["PHI_ACCESS"]

    @pytest.mark.asyncio
    async def test_close_flushes_and_closes_transport(self, service, transport):
        await service.create_audit_log("DATA_VIEW")
        await service.start()
        transport.close = MagicMock(wraps=transport.close)
        await service.close()
        assert transport.paths() == ["/audit/log/batch"]
        transport.close.assert_called_once()


class TestFromConfig:
    def test_http_transport(self):
        config = ComplianceConfig(transport=TransportConfig(base_url="https://api.example.org"))
        service = ComplianceService.from_config(config)
        assert isinstance(service.transport, HttpTransport)

    def test_pool_takes_precedence(self):
        config = ComplianceConfig(transport=TransportConfig(base_url="https://api.example.org"))
        service = ComplianceService.from_config(config, pool=MagicMock())
        assert isinstance(service.transport, PostgresTransport)

    def test_no_transport(self, caplog):
        service = ComplianceService.from_config(ComplianceConfig())
        assert service.transport is None
        assert "No transport configured" in caplog.text
