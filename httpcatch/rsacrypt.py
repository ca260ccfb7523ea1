"""RSA key handling, chunked RSA-OAEP encryption and PKCS#1 v1.5 signatures."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TypeVar

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

T = TypeVar("T")

_PUBLIC_EXPONENT = 65537


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA512()),
        algorithm=hashes.SHA512(),
        label=None,
    )


def generate_key_pair(bits: int) -> tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    """Generate an RSA key pair of the given size in bits."""
    private_key = rsa.generate_private_key(public_exponent=_PUBLIC_EXPONENT, key_size=bits)
    return private_key, private_key.public_key()


def private_key_to_bytes(priv: rsa.RSAPrivateKey) -> bytes:
    """Serialise a private key as PKCS#1 DER."""
    return priv.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_to_bytes(pub: rsa.RSAPublicKey) -> bytes:
    """Serialise a public key as PKIX (SubjectPublicKeyInfo) DER."""
    return pub.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def bytes_to_private_key(data: bytes) -> rsa.RSAPrivateKey:
    """Load an RSA private key from DER bytes."""
    key = serialization.load_der_private_key(data, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise TypeError(f"expected an RSA private key, got {type(key).__name__}")
    return key


def bytes_to_public_key(data: bytes) -> rsa.RSAPublicKey:
    """Load an RSA public key from PKIX DER bytes."""
    key = serialization.load_der_public_key(data)
    if not isinstance(key, rsa.RSAPublicKey):
        raise TypeError(f"expected an RSA public key, got {type(key).__name__}")
    return key


def chunk_by(items: Sequence[T], chunk_size: int) -> list[Sequence[T]]:
    """Split a sequence into consecutive chunks of at most ``chunk_size`` items.

    An empty sequence yields a single empty chunk.
    """
    if chunk_size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[start:start + chunk_size] for start in range(0, max(len(items), 1), chunk_size)]


def encrypt_with_public_key(msg: bytes, pub: rsa.RSAPublicKey) -> bytes:
    """Encrypt a message of any length with RSA-OAEP (SHA-512), one block per chunk."""
    chunk_size = pub.key_size // 8 - 2 * hashes.SHA512.digest_size - 2
    if chunk_size <= 0:
        raise ValueError("key is too small for RSA-OAEP with SHA-512")
    return b"".join(pub.encrypt(bytes(chunk), _oaep()) for chunk in chunk_by(msg, chunk_size))


def decrypt_with_private_key(ciphertext: bytes, priv: rsa.RSAPrivateKey) -> bytes:
    """Decrypt data produced by :func:`encrypt_with_public_key`."""
    block_size = priv.key_size // 8
    return b"".join(priv.decrypt(bytes(chunk), _oaep()) for chunk in chunk_by(ciphertext, block_size))


def sign_with_private_key(msg: bytes, priv: rsa.RSAPrivateKey) -> bytes:
    """Sign a message with RSA PKCS#1 v1.5 over SHA-256."""
    return priv.sign(msg, padding.PKCS1v15(), hashes.SHA256())


def verify_with_public_key(msg: bytes, sig: bytes, pub: rsa.RSAPublicKey) -> None:
    """Verify a PKCS#1 v1.5 SHA-256 signature; raise ``InvalidSignature`` if it does not match."""
    pub.verify(sig, msg, padding.PKCS1v15(), hashes.SHA256())