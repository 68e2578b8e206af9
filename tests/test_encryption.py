"""Field-level encryption tests.

HIPAA Citation: 45 CFR 164.312(a)(2)(iv) - Encryption and Decryption
"Implement a mechanism to encrypt and decrypt electronic protected
health information."

NIST SP 800-38D: AES-GCM with a 96-bit IV and a 128-bit tag.
"""

import base64
import hashlib
import os

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from healthmint_compliance.audit.context import audit_context
from healthmint_compliance.errors import DecryptionError, EncryptionError
from healthmint_compliance.phi.encryption import (
    IV_SIZE_BYTES,
    KEY_SIZE_BYTES,
    TAG_SIZE_BYTES,
    EncryptedField,
    FieldCryptographer,
    KeyManager,
    KeyRotator,
    KeySource,
    coerce_key,
    content_hash,
    derive_key,
)
from healthmint_compliance.secrets import MaskedSecret

json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=30),
    lambda children: st.lists(children, max_size=4)
    | st.dictionaries(st.text(max_size=8), children, max_size=4),
    max_leaves=12,
)


@pytest.fixture
def key():
    return os.urandom(KEY_SIZE_BYTES)


@pytest.fixture
def cryptographer(key):
    return FieldCryptographer(KeyManager(key=key))


def tamper(token: str) -> str:
    prefix, _, body = token.partition(".")
    blob = bytearray(base64.urlsafe_b64decode(body))
    blob[IV_SIZE_BYTES] ^= 0x01
    return f"{prefix}.{base64.urlsafe_b64encode(bytes(blob)).decode('ascii')}"


class TestTokenRoundTrip:
    """164.312(a)(2)(iv): Values decrypt to exactly what was encrypted."""

    @given(value=json_values)
    @settings(max_examples=100)
    def test_round_trip(self, value):
        crypt = FieldCryptographer(KeyManager(key=b"k" * KEY_SIZE_BYTES))
        assert crypt.decrypt(crypt.encrypt(value)) == value

    def test_strings_that_look_like_json_survive(self, cryptographer):
        for value in ["123", "true", "null", '{"a": 1}', ""]:
            assert cryptographer.decrypt(cryptographer.encrypt(value)) == value

    def test_token_format(self, cryptographer):
        token = cryptographer.encrypt("secret")
        assert token.startswith("v1.")
        blob = base64.urlsafe_b64decode(token[3:])
        assert len(blob) > IV_SIZE_BYTES + TAG_SIZE_BYTES

    def test_fresh_iv_per_encryption(self, cryptographer):
        assert cryptographer.encrypt("same") != cryptographer.encrypt("same")

    def test_plaintext_not_in_token(self, cryptographer):
        token = cryptographer.encrypt("123-45-6789")
        assert "123-45-6789" not in token

    def test_passphrase_key(self):
        crypt = FieldCryptographer(KeyManager(key=b"x" * KEY_SIZE_BYTES))
        token = crypt.encrypt({"ssn": "123-45-6789"}, key="correct horse")
        assert crypt.decrypt(token, key="correct horse") == {"ssn": "123-45-6789"}

    def test_unserializable_value_rejected(self, cryptographer):
        with pytest.raises(EncryptionError, match="not JSON serializable"):
            cryptographer.encrypt(object())


class TestDecryptFailsClosed:
    def test_wrong_key(self, cryptographer):
        token = cryptographer.encrypt("secret")
        other = FieldCryptographer(KeyManager(key=os.urandom(KEY_SIZE_BYTES)))
        with pytest.raises(DecryptionError):
            other.decrypt(token)

    def test_tampered_ciphertext(self, cryptographer):
        token = cryptographer.encrypt("secret value")
        with pytest.raises(DecryptionError):
            cryptographer.decrypt(tamper(token))

    @pytest.mark.parametrize("token", ["garbage", "v2.AAAA", "v1.!!!!", "v1.AAAA", None])
    def test_malformed_tokens(self, cryptographer, token):
        with pytest.raises(DecryptionError):
            cryptographer.decrypt(token)

    @pytest.mark.parametrize("bad_key", [b"short", "", 12345])
    def test_invalid_key_is_a_decryption_error(self, bad_key):
        crypt = FieldCryptographer()
        token = crypt.encrypt("x", "pass-a")
        field = crypt.encrypt_field("x", "pass-a")

        with pytest.raises(DecryptionError) as exc_info:
            crypt.decrypt(token, bad_key)
        assert exc_info.value.code == "DECRYPTION_ERROR"
        with pytest.raises(DecryptionError):
            crypt.decrypt_field(field, bad_key)

    def test_invalid_key_still_an_encryption_error_when_encrypting(self):
        with pytest.raises(EncryptionError) as exc_info:
            FieldCryptographer().encrypt("x", b"short")
        assert exc_info.value.code == "ENCRYPTION_ERROR"

    def test_decryption_error_is_an_encryption_error(self):
        assert issubclass(DecryptionError, EncryptionError)


class TestEncryptedField:
    def test_field_round_trip(self, cryptographer):
        encrypted = cryptographer.encrypt_field("Jane Doe")
        assert len(bytes.fromhex(encrypted.iv)) == IV_SIZE_BYTES
        assert len(bytes.fromhex(encrypted.auth_tag)) == TAG_SIZE_BYTES
        assert cryptographer.decrypt_field(encrypted) == "Jane Doe"

    def test_dict_form(self, cryptographer):
        data = cryptographer.encrypt_field(42).to_dict()
        assert set(data) == {"encryptedData", "iv", "authTag"}
        assert EncryptedField.looks_encrypted(data)
        assert cryptographer.decrypt_field(data) == 42

    def test_malformed_dict(self, cryptographer):
        with pytest.raises(DecryptionError, match="Malformed"):
            cryptographer.decrypt_field({"iv": "00"})

    def test_tampered_tag(self, cryptographer):
        encrypted = cryptographer.encrypt_field("value")
        bad = EncryptedField(encrypted.encrypted_data, encrypted.iv, "00" * TAG_SIZE_BYTES)
        with pytest.raises(DecryptionError):
            cryptographer.decrypt_field(bad)

    def test_bad_hex(self, cryptographer):
        with pytest.raises(DecryptionError, match="hex"):
            cryptographer.decrypt_field(EncryptedField("zz", "zz", "zz"))

    def test_non_string_field_parts(self, cryptographer):
        with pytest.raises(DecryptionError, match="hex"):
            cryptographer.decrypt_field({"encryptedData": 123, "iv": "00", "authTag": "00"})

    def test_encrypt_and_decrypt_fields(self, cryptographer):
        record = {"name": "Jane", "ssn": "123-45-6789", "score": 3, "email": None}
        encrypted = cryptographer.encrypt_fields(record, {"name", "ssn", "email"})
        assert EncryptedField.looks_encrypted(encrypted["name"])
        assert EncryptedField.looks_encrypted(encrypted["ssn"])
        assert encrypted["email"] is None
        assert encrypted["score"] == 3
        assert record["name"] == "Jane"
        assert cryptographer.decrypt_fields(encrypted, {"name", "ssn", "email"}) == record


class TestKeyDerivation:
    def test_derive_key_is_deterministic(self):
        assert derive_key("token", "seed") == derive_key("token", "seed")
        assert len(derive_key("token", "seed")) == KEY_SIZE_BYTES

    def test_derive_key_inputs_matter(self):
        base = derive_key("token", "seed")
        assert derive_key("token", "other-seed") != base
        assert derive_key("token", "seed", "Mozilla/5.0") != base
        assert derive_key(MaskedSecret("token"), "seed") == base

    def test_derive_key_is_sha256_of_concatenation(self):
        expected = hashlib.sha256(b"tokenseedUA").digest()
        assert derive_key("token", "seed", "UA") == expected

    def test_content_hash(self):
        assert (
            content_hash("abc")
            == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )
        assert content_hash(b"abc") == content_hash("abc")

    def test_coerce_key_rejects_wrong_length(self):
        with pytest.raises(EncryptionError, match="32 bytes"):
            coerce_key(b"short")

    def test_coerce_key_rejects_empty_passphrase(self):
        with pytest.raises(EncryptionError):
            coerce_key("")


class TestKeyManager:
    def test_explicit_key(self, key):
        manager = KeyManager(key=key)
        assert manager.get_key() == key
        assert manager.key_source is KeySource.EXPLICIT

    def test_environment_key(self, monkeypatch, no_key_env, key):
        monkeypatch.setenv("HEALTHMINT_PHI_KEY", base64.b64encode(key).decode())
        manager = KeyManager()
        assert manager.get_key() == key
        assert manager.key_source is KeySource.ENVIRONMENT

    def test_invalid_environment_key(self, monkeypatch, no_key_env):
        monkeypatch.setenv("HEALTHMINT_PHI_KEY", "not base64!")
        with pytest.raises(EncryptionError, match="Invalid base64"):
            KeyManager().get_key()

    def test_environment_key_wrong_length(self, monkeypatch, no_key_env):
        monkeypatch.setenv("HEALTHMINT_PHI_KEY", base64.b64encode(b"short").decode())
        with pytest.raises(EncryptionError, match="32 bytes"):
            KeyManager().get_key()

    def test_key_file(self, tmp_path, no_key_env, key):
        key_file = tmp_path / "phi.key"
        key_file.write_text(KeyManager.key_to_base64(key) + "\n")
        key_file.chmod(0o600)
        manager = KeyManager(key_file=key_file)
        assert manager.get_key() == key
        assert manager.key_source is KeySource.FILE

    def test_key_file_from_environment(self, tmp_path, monkeypatch, no_key_env, key):
        key_file = tmp_path / "phi.key"
        key_file.write_text(KeyManager.key_to_base64(key))
        key_file.chmod(0o400)
        monkeypatch.setenv("HEALTHMINT_PHI_KEY_FILE", str(key_file))
        assert KeyManager().get_key() == key

    def test_insecure_key_file_warns(self, tmp_path, no_key_env, key, caplog):
        key_file = tmp_path / "phi.key"
        key_file.write_text(KeyManager.key_to_base64(key))
        key_file.chmod(0o644)
        KeyManager(key_file=key_file).get_key()
        assert "insecure permissions" in caplog.text

    def test_missing_key_file(self, tmp_path, no_key_env):
        with pytest.raises(EncryptionError, match="not found"):
            KeyManager(key_file=tmp_path / "missing.key").get_key()

    def test_session_derived_key(self, no_key_env):
        manager = KeyManager(installation_seed="seed")
        with audit_context(actor="dr-smith", session_token="tok-1", user_agent="UA"):
            assert manager.get_key() == derive_key("tok-1", "seed", "UA")
            assert manager.key_source is KeySource.DERIVED

    def test_server_secret_outside_session(self, no_key_env):
        manager = KeyManager(installation_seed="seed", server_secret=MaskedSecret("server"))
        assert manager.get_key() == derive_key("server", "seed")

    def test_no_key_material(self, no_key_env):
        with pytest.raises(EncryptionError, match="No encryption key available"):
            KeyManager().get_key()

    def test_clear_cache_rereads_environment(self, monkeypatch, no_key_env):
        first, second = os.urandom(KEY_SIZE_BYTES), os.urandom(KEY_SIZE_BYTES)
        monkeypatch.setenv("HEALTHMINT_PHI_KEY", base64.b64encode(first).decode())
        manager = KeyManager()
        assert manager.get_key() == first
        monkeypatch.setenv("HEALTHMINT_PHI_KEY", base64.b64encode(second).decode())
        assert manager.get_key() == first
        manager.clear_cache()
        assert manager.get_key() == second

    def test_generate_key(self):
        key = KeyManager.generate_key()
        assert len(key) == KEY_SIZE_BYTES
        assert base64.b64decode(KeyManager.key_to_base64(key)) == key


class TestSessionScopedEncryption:
    """Ciphertext produced in one session is unreadable in another."""

    def test_same_session_round_trip(self, no_key_env):
        crypt = FieldCryptographer(KeyManager(installation_seed="seed"))
        with audit_context(actor="dr-smith", session_token="tok-1"):
            token = crypt.encrypt({"mrn": "A1234"})
            assert crypt.decrypt(token) == {"mrn": "A1234"}

    def test_other_session_cannot_decrypt(self, no_key_env):
        crypt = FieldCryptographer(KeyManager(installation_seed="seed"))
        with audit_context(actor="dr-smith", session_token="tok-1"):
            token = crypt.encrypt("secret")
        with audit_context(actor="dr-smith", session_token="tok-2"):
            with pytest.raises(DecryptionError):
                crypt.decrypt(token)

    def test_outside_session_without_secret_raises(self, no_key_env):
        crypt = FieldCryptographer(KeyManager(installation_seed="seed"))
        with pytest.raises(EncryptionError):
            crypt.encrypt("secret")


class TestKeyRotator:
    def test_rotate_field(self):
        old = FieldCryptographer(KeyManager(key=os.urandom(KEY_SIZE_BYTES)))
        new = FieldCryptographer(KeyManager(key=os.urandom(KEY_SIZE_BYTES)))
        encrypted = old.encrypt_field("Jane Doe")

        rotated = KeyRotator(old, new).rotate_field(encrypted)

        assert new.decrypt_field(rotated) == "Jane Doe"
        with pytest.raises(DecryptionError):
            old.decrypt_field(rotated)

    def test_rotate_record_skips_plain_fields(self):
        old = FieldCryptographer(KeyManager(key=os.urandom(KEY_SIZE_BYTES)))
        new = FieldCryptographer(KeyManager(key=os.urandom(KEY_SIZE_BYTES)))
        record = old.encrypt_fields({"name": "Jane", "score": 3}, {"name"})

        rotated = KeyRotator(old, new).rotate_record(record, {"name", "score"})

        assert rotated["score"] == 3
        assert new.decrypt_fields(rotated, {"name"}) == {"name": "Jane", "score": 3}
