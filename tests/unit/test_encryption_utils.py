"""
Unit tests for the tenant secret vault.
"""

import base64

import pytest

from query_gateway_core.config import AppConfig, SecurityConfig
from query_gateway_core.exceptions import ConfigurationError, DecryptionError
from query_gateway_core.utils.encryption_utils import (
    DELIMITER,
    CredentialVault,
    decrypt_fields,
    encrypt_fields,
    get_vault,
    parse_master_key,
)

KEY = bytes(range(32))


class TestParseMasterKey:
    """Test master key decoding."""

    def test_hex_key(self):
        assert parse_master_key(KEY.hex()) == KEY

    def test_base64_key(self):
        assert parse_master_key(base64.b64encode(KEY).decode()) == KEY

    def test_surrounding_whitespace_ignored(self):
        assert parse_master_key(f"  {KEY.hex()}\n") == KEY

    @pytest.mark.parametrize("raw", ["not a key!", base64.b64encode(b"short").decode(), "ab" * 16])
    def test_invalid_keys(self, raw):
        with pytest.raises(ConfigurationError):
            parse_master_key(raw)


class TestEncryptDecrypt:
    """Test the authenticated encryption round trip."""

    @pytest.mark.parametrize(
        "plaintext", ["client-secret", "", "with:delimiters:inside", "unicode_üîê", "x" * 5000]
    )
    def test_round_trip(self, vault, plaintext):
        assert vault.decrypt(vault.encrypt(plaintext)) == plaintext

    def test_token_has_three_hex_components(self, vault):
        nonce, tag, ciphertext = vault.encrypt("secret").split(DELIMITER)

        assert len(bytes.fromhex(nonce)) == 12
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == len("secret")

    def test_nonce_is_random(self, vault):
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_flipped_tag_bit_fails(self, vault):
        nonce, tag, ciphertext = vault.encrypt("secret").split(DELIMITER)
        tampered_tag = bytearray(bytes.fromhex(tag))
        tampered_tag[0] ^= 0x01

        with pytest.raises(DecryptionError):
            vault.decrypt(DELIMITER.join([nonce, bytes(tampered_tag).hex(), ciphertext]))

    def test_flipped_ciphertext_bit_fails(self, vault):
        nonce, tag, ciphertext = vault.encrypt("secret").split(DELIMITER)
        tampered = bytearray(bytes.fromhex(ciphertext))
        tampered[-1] ^= 0x80

        with pytest.raises(DecryptionError):
            vault.decrypt(DELIMITER.join([nonce, tag, bytes(tampered).hex()]))

    def test_wrong_key_fails(self, vault):
        token = vault.encrypt("secret")
        other = CredentialVault(bytes(32))

        with pytest.raises(DecryptionError):
            other.decrypt(token)

    @pytest.mark.parametrize("token", ["", "a:b", "a:b:c:d", "zz:zz:zz"])
    def test_malformed_tokens(self, vault, token):
        with pytest.raises(DecryptionError):
            vault.decrypt(token)

    def test_short_nonce_rejected(self, vault):
        _, tag, ciphertext = vault.encrypt("secret").split(DELIMITER)

        with pytest.raises(DecryptionError) as exc_info:
            vault.decrypt(DELIMITER.join(["00" * 8, tag, ciphertext]))
        assert exc_info.value.context["nonce_length"] == 8

    def test_vault_rejects_wrong_key_size(self):
        with pytest.raises(ConfigurationError):
            CredentialVault(b"too-short")


class TestFieldHelpers:
    """Test encrypting selected fields of a dict."""

    def test_encrypt_and_decrypt_fields(self, vault):
        data = {"client_id": "abc", "client_secret": "s3cret", "scope": None}

        encrypted = encrypt_fields(vault, data, ["client_secret", "scope"])

        assert encrypted["client_id"] == "abc"
        assert encrypted["client_secret"] != "s3cret"
        assert encrypted["scope"] is None
        assert data["client_secret"] == "s3cret"
        assert decrypt_fields(vault, encrypted, ["client_secret"]) == data


class TestVaultFromConfig:
    """Test the master key policy per environment."""

    def _config(self, environment, key=None, allow_insecure=False):
        return AppConfig(
            environment=environment,
            security=SecurityConfig(encryption_key=key, allow_insecure_dev_key=allow_insecure),
        )

    def test_configured_key_is_used(self):
        vault = CredentialVault.from_config(self._config("production", key=KEY.hex()))

        assert vault.insecure is False
        assert CredentialVault(KEY).decrypt(vault.encrypt("x")) == "x"

    def test_missing_key_in_production_fails_even_with_opt_in(self):
        with pytest.raises(ConfigurationError):
            CredentialVault.from_config(self._config("production", allow_insecure=True))

    def test_missing_key_without_opt_in_fails(self):
        with pytest.raises(ConfigurationError):
            CredentialVault.from_config(self._config("development"))

    def test_insecure_key_only_with_opt_in(self):
        vault = CredentialVault.from_config(self._config("development", allow_insecure=True))

        assert vault.insecure is True
        assert vault.decrypt(vault.encrypt("dev")) == "dev"

    def test_get_vault_is_cached(self):
        assert get_vault() is get_vault()
