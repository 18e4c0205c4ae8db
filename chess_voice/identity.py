"""
Transport identity management for chess-voice.

The Reticulum signaling transport needs a persistent RNS identity for its
topic destinations. This is separate from the chess participant id, which
is supplied by the game.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import RNS

from chess_voice.logging_config import get_logger

logger = get_logger("identity")


def get_identity_storage_path() -> Path:
    """Get the path where the identity file is stored."""
    config_dir = Path.home() / ".chess_voice"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir / "identity"


def load_or_create_identity(
    identity_path: Optional[Path] = None, force_new: bool = False
) -> RNS.Identity:
    """
    Load an existing identity from file, or create a new one if it doesn't exist.

    Args:
        identity_path: Path to identity file. If None, uses default (~/.chess_voice/identity)
        force_new: If True, create a new identity even if one exists

    Returns:
        RNS.Identity instance
    """
    if identity_path is None:
        identity_path = get_identity_storage_path()

    if identity_path.exists() and not force_new:
        try:
            identity = RNS.Identity.from_file(str(identity_path))
            if identity is None or identity.hash is None:
                raise ValueError("Identity loaded but is invalid (missing hash)")
            logger.info(f"Loaded transport identity {identity.hash.hex()}")
            return identity
        except Exception as exc:
            logger.error(f"Failed to load identity from {identity_path}: {exc}")
            logger.warning("Creating new identity to replace corrupted file")

    identity = RNS.Identity()
    save_identity(identity, identity_path)
    logger.info(f"Created transport identity {identity.hash.hex()} at {identity_path}")
    return identity


def save_identity(identity: RNS.Identity, identity_path: Path) -> None:
    """Save an identity to file, readable only by the owner."""
    identity_path.parent.mkdir(parents=True, exist_ok=True)
    identity.to_file(str(identity_path))

    try:
        os.chmod(identity_path, 0o600)
    except Exception as exc:
        logger.warning(f"Could not set permissions on {identity_path}: {exc}")
