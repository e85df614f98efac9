"""
Manifest Signing & Verification

Ed25519-based signing and verification of plugin manifests. A signed
manifest that also declares its content checksum pins the whole package
to the publisher's key.
"""

from __future__ import annotations

import base64
import binascii
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519

from pluginhost.exceptions import ConfigError, SignatureError
from pluginhost.lifecycle.manifest import PluginManifest

logger = logging.getLogger(__name__)


class PluginSigner:
    """Sign plugin manifests using an Ed25519 key.

    Args:
        private_key: Ed25519 private key for signing operations.

    Example:
        >>> private_key = ed25519.Ed25519PrivateKey.generate()
        >>> signer = PluginSigner(private_key)
        >>> signed = signer.sign(manifest)
        >>> assert signed.signature is not None
    """

    def __init__(self, private_key: ed25519.Ed25519PrivateKey) -> None:
        self._private_key = private_key

    @property
    def public_key(self) -> ed25519.Ed25519PublicKey:
        """Return the public key corresponding to the signing key."""
        return self._private_key.public_key()

    def sign(self, manifest: PluginManifest) -> PluginManifest:
        """Return a copy of *manifest* with the ``signature`` field populated."""
        sig = self._private_key.sign(manifest.signable_bytes())
        signed = manifest.model_copy(update={"signature": base64.b64encode(sig).decode()})
        logger.info("Signed plugin %s@%s", manifest.id, manifest.version)
        return signed


def verify_signature(
    manifest: PluginManifest,
    public_key: ed25519.Ed25519PublicKey,
) -> bool:
    """Verify the Ed25519 signature of a plugin manifest.

    Returns:
        ``True`` if the signature is valid.

    Raises:
        SignatureError: If the signature is missing or invalid.
    """
    if not manifest.signature:
        raise SignatureError("Manifest has no signature")
    try:
        sig_bytes = base64.b64decode(manifest.signature, validate=True)
        public_key.verify(sig_bytes, manifest.signable_bytes())
    except (InvalidSignature, binascii.Error, ValueError) as exc:
        raise SignatureError(
            f"Signature verification failed for {manifest.id}@{manifest.version}"
        ) from exc
    logger.debug("Signature verified for %s@%s", manifest.id, manifest.version)
    return True


def load_public_key(encoded: str) -> ed25519.Ed25519PublicKey:
    """Decode a base64 raw Ed25519 public key as found in configuration."""
    try:
        return ed25519.Ed25519PublicKey.from_public_bytes(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise ConfigError(f"Invalid Ed25519 public key: {exc}") from exc
