"""
Tests for the credential vault.

Tests:
- Encrypt/decrypt with the right password
- Wrong password, tampering and unknown versions rejected
- Scoped unlock wipes the key
- Wallet file load/save
"""

import json
import pytest

from hedgefarm.core.models import Wallet
from hedgefarm.core.vault import (
    CredentialVault,
    InvalidCredentialError,
    SigningKey,
    VaultError,
    WalletNotFoundError,
    _b64decode,
    _b64encode,
    decrypt_secret,
    encrypt_secret,
    load_wallets,
    save_wallet,
)

SEED = bytes(range(32))
PASSWORD = "correct horse battery staple"


@pytest.fixture(scope="module")
def blob():
    return encrypt_secret(SEED, PASSWORD)


class TestEncryption:
    """Tests for blob encryption."""

    def test_round_trip(self, blob):
        assert bytes(decrypt_secret(blob, PASSWORD)) == SEED

    def test_blob_layout(self, blob):
        raw = _b64decode(blob)
        assert raw[0] == 1
        assert len(raw) == 1 + 16 + 12 + len(SEED) + 16
        assert not blob.endswith("=")

    def test_fresh_salt_each_time(self):
        assert encrypt_secret(SEED, PASSWORD) != encrypt_secret(SEED, PASSWORD)

    def test_wrong_password(self, blob):
        with pytest.raises(InvalidCredentialError):
            decrypt_secret(blob, "wrong password")

    def test_tampered_ciphertext(self, blob):
        raw = bytearray(_b64decode(blob))
        raw[-1] ^= 0x01
        with pytest.raises(InvalidCredentialError):
            decrypt_secret(_b64encode(bytes(raw)), PASSWORD)

    def test_unknown_version(self, blob):
        """Blobs from an unknown format version are refused."""
        raw = bytearray(_b64decode(blob))
        raw[0] = 2
        with pytest.raises(InvalidCredentialError, match="Unsupported"):
            decrypt_secret(_b64encode(bytes(raw)), PASSWORD)

    def test_not_base64(self):
        with pytest.raises(InvalidCredentialError):
            decrypt_secret("!!!not base64!!!", PASSWORD)

    def test_too_short(self):
        with pytest.raises(InvalidCredentialError, match="too short"):
            decrypt_secret(_b64encode(b"\x01" * 10), PASSWORD)

    def test_empty_password_rejected(self):
        with pytest.raises(ValueError):
            encrypt_secret(SEED, "")


class TestSigningKey:
    """Tests for SigningKey."""

    def test_wrong_seed_length(self):
        with pytest.raises(InvalidCredentialError):
            SigningKey(bytearray(16))

    def test_wipe(self):
        seed = bytearray(SEED)
        key = SigningKey(seed)
        key.sign(b"payload")

        key.wipe()

        assert seed == bytearray(32)
        with pytest.raises(VaultError):
            key.sign(b"payload")

    def test_repr_redacted(self):
        assert "redacted" in repr(SigningKey(bytearray(SEED)))


class TestCredentialVault:
    """Tests for CredentialVault."""

    @pytest.fixture
    def vault(self, blob):
        wallet = Wallet("wallet_1", "backpack", "api-key", blob)
        return CredentialVault({"wallet_1": wallet}, password_provider=lambda: PASSWORD)

    def test_unlock_signs(self, vault):
        with vault.unlock("wallet_1") as key:
            signature = key.sign(b"hello")
        assert len(signature) == 64

    def test_key_wiped_after_block(self, vault):
        with vault.unlock("wallet_1") as key:
            pass
        with pytest.raises(VaultError):
            key.sign(b"hello")

    def test_key_wiped_on_error(self, vault):
        with pytest.raises(RuntimeError):
            with vault.unlock("wallet_1") as key:
                raise RuntimeError("boom")
        with pytest.raises(VaultError):
            key.sign(b"hello")

    def test_unknown_wallet(self, vault):
        with pytest.raises(WalletNotFoundError):
            with vault.unlock("nope"):
                pass

    def test_explicit_password_overrides_provider(self, vault):
        with pytest.raises(InvalidCredentialError):
            with vault.unlock("wallet_1", password="wrong"):
                pass

    def test_no_password_available(self, blob):
        vault = CredentialVault({"w": Wallet("w", "backpack", "k", blob)})
        with pytest.raises(VaultError, match="No vault password"):
            with vault.unlock("w"):
                pass

    def test_verify(self, vault, blob):
        assert vault.verify() == []
        assert vault.verify("wrong") == ["wallet_1"]

    def test_wallet_repr_has_no_secret(self, vault, blob):
        assert blob not in repr(vault.get_wallet("wallet_1"))


class TestWalletFile:
    """Tests for load_wallets / save_wallet."""

    def test_save_and_load(self, tmp_path, blob):
        path = tmp_path / "wallets.json"
        save_wallet(str(path), Wallet("wallet_1", "backpack", "key1", blob))
        save_wallet(str(path), Wallet("wallet_2", "backpack", "key2", blob))

        wallets = load_wallets(str(path))

        assert set(wallets) == {"wallet_1", "wallet_2"}
        assert wallets["wallet_2"].api_key == "key2"
        assert not (tmp_path / "wallets.json.tmp").exists()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_wallets(str(tmp_path / "missing.json"))

    def test_missing_fields(self, tmp_path):
        path = tmp_path / "wallets.json"
        path.write_text(json.dumps({"w": {"venue": "backpack", "api_key": "k"}}))
        with pytest.raises(ValueError, match="encrypted_secret"):
            load_wallets(str(path))

    def test_from_file(self, tmp_path, blob):
        path = tmp_path / "wallets.json"
        save_wallet(str(path), Wallet("wallet_1", "backpack", "key1", blob))
        vault = CredentialVault.from_file(str(path), lambda: PASSWORD)
        assert [w.wallet_id for w in vault.wallets] == ["wallet_1"]
