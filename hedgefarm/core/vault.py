"""
Credential Vault.

Per-wallet signing secrets are stored encrypted at rest and decrypted only
for the duration of a single signing operation.

Blob format (base64, no padding):
    [1B version][16B scrypt salt][12B AES-GCM nonce][ciphertext + 16B tag]

Version 1: scrypt(n=2**14, r=8, p=1) -> 32 byte key, AES-256-GCM, the
version byte is bound as associated data.
"""

import base64
import binascii
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from hedgefarm.core.models import Wallet

logger = logging.getLogger(__name__)

VAULT_VERSION = 1
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
ED25519_SEED_SIZE = 32

# Cost parameters per blob version
SCRYPT_PARAMS = {
    1: {"n": 2 ** 14, "r": 8, "p": 1},
}


class VaultError(Exception):
    """Base exception for vault errors."""
    pass


class InvalidCredentialError(VaultError):
    """Decryption failed: wrong password, tampered blob or unknown version."""
    pass


class WalletNotFoundError(VaultError):
    """No wallet with the requested id is registered."""
    pass


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padded = text.strip() + "=" * (-len(text.strip()) % 4)
    return base64.b64decode(padded, validate=True)


def derive_key(password: str, salt: bytes, version: int = VAULT_VERSION) -> bytes:
    """Derive the symmetric key for a blob version (memory-hard)."""
    params = SCRYPT_PARAMS[version]
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=params["n"], r=params["r"], p=params["p"])
    return kdf.derive(password.encode("utf-8"))


def encrypt_secret(secret: Union[bytes, bytearray], password: str) -> str:
    """
    Encrypt a signing secret with a password.

    Args:
        secret: Raw secret bytes
        password: Vault password

    Returns:
        Base64 blob
    """
    if not password:
        raise ValueError("Vault password is required")

    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    header = bytes([VAULT_VERSION])
    key = derive_key(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, bytes(secret), header)
    return _b64encode(header + salt + nonce + ciphertext)


def decrypt_secret(blob: str, password: str) -> bytearray:
    """
    Decrypt a vault blob.

    Returns a mutable buffer so the caller can zero it after use.

    Raises:
        InvalidCredentialError: on malformed blob, unknown version or
            authentication failure
    """
    try:
        raw = _b64decode(blob)
    except (binascii.Error, ValueError) as e:
        raise InvalidCredentialError("Credential blob is not valid base64") from e

    if len(raw) < 1 + SALT_SIZE + NONCE_SIZE + TAG_SIZE:
        raise InvalidCredentialError("Credential blob is too short")

    version = raw[0]
    if version not in SCRYPT_PARAMS:
        raise InvalidCredentialError(f"Unsupported credential version: {version}")

    salt = raw[1:1 + SALT_SIZE]
    nonce = raw[1 + SALT_SIZE:1 + SALT_SIZE + NONCE_SIZE]
    ciphertext = raw[1 + SALT_SIZE + NONCE_SIZE:]

    key = derive_key(password, salt, version)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, raw[:1])
    except InvalidTag as e:
        raise InvalidCredentialError("Credential authentication failed") from e

    return bytearray(plaintext)


def _zero(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


class SigningKey:
    """
    ED25519 signing capability over a decrypted seed.

    Only valid inside `CredentialVault.unlock`; wiped on exit.
    """

    def __init__(self, seed: bytearray):
        if len(seed) != ED25519_SEED_SIZE:
            raise InvalidCredentialError(
                f"Signing seed must be {ED25519_SEED_SIZE} bytes, got {len(seed)}"
            )
        self._seed = seed
        self._key: Optional[Ed25519PrivateKey] = Ed25519PrivateKey.from_private_bytes(bytes(seed))

    def sign(self, message: bytes) -> bytes:
        if self._key is None:
            raise VaultError("Signing key used after release")
        return self._key.sign(message)

    @property
    def public_key(self) -> str:
        """Base64 raw public key (what venues call the API key)."""
        if self._key is None:
            raise VaultError("Signing key used after release")
        raw = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return base64.b64encode(raw).decode("ascii")

    def wipe(self) -> None:
        _zero(self._seed)
        self._key = None

    def __repr__(self) -> str:
        return "SigningKey(<redacted>)"


class CredentialVault:
    """
    Holds encrypted wallet credentials and hands out scoped signing keys.

    The password is supplied by a provider callable so it can come from the
    environment or an interactive prompt; it is never persisted.
    """

    def __init__(
        self,
        wallets: Dict[str, Wallet],
        password_provider: Optional[Callable[[], str]] = None,
    ):
        self._wallets = dict(wallets)
        self._password_provider = password_provider

    @classmethod
    def from_file(
        cls,
        path: str,
        password_provider: Optional[Callable[[], str]] = None,
    ) -> "CredentialVault":
        return cls(load_wallets(path), password_provider)

    @property
    def wallets(self) -> List[Wallet]:
        return list(self._wallets.values())

    def get_wallet(self, wallet_id: str) -> Wallet:
        wallet = self._wallets.get(wallet_id)
        if wallet is None:
            raise WalletNotFoundError(f"Unknown wallet: {wallet_id}")
        return wallet

    def _password(self, password: Optional[str]) -> str:
        if password is not None:
            return password
        if self._password_provider is None:
            raise VaultError("No vault password available")
        return self._password_provider()

    @contextmanager
    def unlock(self, wallet_id: str, password: Optional[str] = None) -> Iterator[SigningKey]:
        """
        Decrypt a wallet's signing key for the duration of the block.

        Usage:
            with vault.unlock("wallet_1") as key:
                signature = key.sign(payload)
        """
        wallet = self.get_wallet(wallet_id)
        seed = decrypt_secret(wallet.encrypted_secret, self._password(password))
        try:
            key = SigningKey(seed)
        except InvalidCredentialError:
            _zero(seed)
            raise

        try:
            yield key
        finally:
            key.wipe()

    def verify(self, password: Optional[str] = None) -> List[str]:
        """
        Try to unlock every wallet.

        Returns:
            Ids of wallets whose credentials could not be decrypted
        """
        failed = []
        for wallet_id in self._wallets:
            try:
                with self.unlock(wallet_id, password):
                    pass
            except InvalidCredentialError as e:
                logger.error(f"Wallet {wallet_id} credentials rejected: {e}")
                failed.append(wallet_id)
        return failed


def load_wallets(path: str) -> Dict[str, Wallet]:
    """
    Load the wallet file.

    Format:
        {"wallet_1": {"venue": "backpack", "api_key": "...", "encrypted_secret": "..."}}
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Wallets file not found: {path}")

    data = json.loads(file_path.read_text())
    wallets = {}
    for wallet_id, entry in data.items():
        missing = [k for k in ("venue", "api_key", "encrypted_secret") if not entry.get(k)]
        if missing:
            raise ValueError(f"Wallet {wallet_id} missing fields: {', '.join(missing)}")
        wallets[wallet_id] = Wallet(
            wallet_id=wallet_id,
            venue=entry["venue"],
            api_key=entry["api_key"],
            encrypted_secret=entry["encrypted_secret"],
        )

    logger.info(f"Loaded {len(wallets)} wallets from {path}")
    return wallets


def save_wallet(path: str, wallet: Wallet) -> None:
    """Add or replace one wallet entry in the wallet file."""
    file_path = Path(path)
    data = json.loads(file_path.read_text()) if file_path.exists() else {}
    data[wallet.wallet_id] = {
        "venue": wallet.venue,
        "api_key": wallet.api_key,
        "encrypted_secret": wallet.encrypted_secret,
    }

    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(data, indent=2))
    os.replace(tmp_path, file_path)
