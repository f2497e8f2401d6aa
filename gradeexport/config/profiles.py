"""
Database Connection Profiles

This module stores named gradebook database connections. A connection URL
usually carries a password, so every URL is encrypted with Fernet
symmetric encryption before it is written to disk; only the profile name,
the database backend and timestamps are kept in clear text.

The master key lives next to the profiles file in ``master.key``; both
files are created with owner-only permissions.

Usage:
    profiles = ProfileManager(Path('config') / 'profiles.enc')
    profiles.add_profile('production', 'postgresql://export:secret@db/gradebook')

    url = profiles.load_profile('production')
"""

import base64
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Union

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from ..utils.logger import get_logger


class ProfileError(Exception):
    """Raised when a profile cannot be stored, found or decrypted."""
    pass


class ProfileData:
    """
    One stored connection profile.

    Attributes:
        profile_name: Name the profile is selected by
        encrypted_url: Fernet token of the connection URL
        backend: Database backend name, e.g. ``postgresql``
        description: Free text shown in listings
        created_at: ISO timestamp of creation
        last_used: ISO timestamp of the last load
    """

    def __init__(self, profile_name: str, encrypted_url: bytes, backend: str = "",
                 description: str = "", created_at: str = "", last_used: str = ""):
        self.profile_name = profile_name
        self.encrypted_url = encrypted_url
        self.backend = backend
        self.description = description
        self.created_at = created_at
        self.last_used = last_used

    def to_dict(self) -> Dict[str, Any]:
        return {
            'profile_name': self.profile_name,
            'encrypted_url': base64.b64encode(self.encrypted_url).decode('utf-8'),
            'backend': self.backend,
            'description': self.description,
            'created_at': self.created_at,
            'last_used': self.last_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProfileData':
        return cls(
            profile_name=data['profile_name'],
            encrypted_url=base64.b64decode(data['encrypted_url'].encode('utf-8')),
            backend=data.get('backend', ''),
            description=data.get('description', ''),
            created_at=data.get('created_at', ''),
            last_used=data.get('last_used', ''),
        )


def validate_database_url(url: str) -> str:
    """
    Check that a string is a usable SQLAlchemy URL.

    Returns:
        str: Backend name of the URL

    Raises:
        ProfileError: If the URL cannot be parsed
    """
    try:
        return make_url(url).get_backend_name()
    except ArgumentError as e:
        raise ProfileError(f"Invalid database URL: {e}")


class ProfileManager:
    """
    Encrypted store of named database connection URLs.

    The store is a JSON file mapping profile names to ``ProfileData``
    entries; it is rewritten on every change.
    """

    def __init__(self, profiles_file: Union[str, Path] = None):
        """
        Initialize the profile manager.

        Args:
            profiles_file: Path of the profiles file (default ``config/profiles.enc``)
        """
        self.profiles_file = Path(profiles_file) if profiles_file else Path("config") / "profiles.enc"
        self.profiles_dir = self.profiles_file.parent
        self.key_file = self.profiles_dir / "master.key"
        self.logger = get_logger(__name__)

        self.profiles_dir.mkdir(parents=True, exist_ok=True)

        self._cipher = Fernet(self._load_or_create_master_key())

    def _load_or_create_master_key(self) -> bytes:
        try:
            if self.key_file.exists():
                with open(self.key_file, 'rb') as f:
                    return f.read()

            master_key = Fernet.generate_key()
            with open(self.key_file, 'wb') as f:
                f.write(master_key)
            os.chmod(self.key_file, 0o600)

            self.logger.info("Created master key", key_file=str(self.key_file))
            return master_key

        except OSError as e:
            raise ProfileError(f"Failed to load or create master key: {e}")

    def encrypt_url(self, url: str) -> bytes:
        return self._cipher.encrypt(url.encode('utf-8'))

    def decrypt_url(self, encrypted_url: bytes) -> str:
        try:
            return self._cipher.decrypt(encrypted_url).decode('utf-8')
        except InvalidToken:
            raise ProfileError("Could not decrypt the connection URL, the master key does not match")

    def add_profile(self, profile_name: str, database_url: str, description: str = "",
                    overwrite: bool = False) -> None:
        """
        Store a connection URL under a name.

        Args:
            profile_name: Unique profile name
            database_url: SQLAlchemy URL, may include a password
            description: Free text shown in listings
            overwrite: Replace an existing profile of the same name

        Raises:
            ProfileError: If the name is taken, empty, or the URL is invalid
        """
        profile_name = profile_name.strip()
        if not profile_name:
            raise ProfileError("Profile name must not be empty")

        backend = validate_database_url(database_url)

        profiles = self._load_profiles()
        if profile_name in profiles and not overwrite:
            raise ProfileError(f"Profile '{profile_name}' already exists")

        now = datetime.now().isoformat()
        profiles[profile_name] = ProfileData(
            profile_name=profile_name,
            encrypted_url=self.encrypt_url(database_url),
            backend=backend,
            description=description,
            created_at=now,
            last_used="",
        )
        self._save_profiles(profiles)

        self.logger.info("Saved connection profile", profile_name=profile_name, backend=backend)

    def load_profile(self, profile_name: str) -> str:
        """
        Decrypt the connection URL of a profile and mark it used.

        Args:
            profile_name: Name of the profile

        Returns:
            str: The connection URL

        Raises:
            ProfileError: If the profile is missing or cannot be decrypted
        """
        profiles = self._load_profiles()
        if profile_name not in profiles:
            raise ProfileError(f"Profile '{profile_name}' not found")

        profile = profiles[profile_name]
        url = self.decrypt_url(profile.encrypted_url)

        profile.last_used = datetime.now().isoformat()
        self._save_profiles(profiles)

        return url

    def list_profiles(self) -> List[Dict[str, str]]:
        """
        List stored profiles without their connection URLs.

        Returns:
            List[Dict[str, str]]: Profile name, backend, description and timestamps
        """
        return [
            {
                'profile_name': profile.profile_name,
                'backend': profile.backend,
                'description': profile.description,
                'created_at': profile.created_at,
                'last_used': profile.last_used,
            }
            for profile in sorted(self._load_profiles().values(), key=lambda p: p.profile_name)
        ]

    def delete_profile(self, profile_name: str) -> bool:
        """
        Delete a stored profile.

        Returns:
            bool: True if the profile was deleted, False if not found
        """
        profiles = self._load_profiles()
        if profile_name not in profiles:
            return False

        del profiles[profile_name]
        self._save_profiles(profiles)

        self.logger.info("Deleted connection profile", profile_name=profile_name)
        return True

    def _load_profiles(self) -> Dict[str, ProfileData]:
        if not self.profiles_file.exists():
            return {}

        try:
            with open(self.profiles_file, 'r', encoding='utf-8') as f:
                profiles_data = json.load(f)
            return {name: ProfileData.from_dict(data) for name, data in profiles_data.items()}
        except (OSError, ValueError, KeyError) as e:
            raise ProfileError(f"Could not read profiles file {self.profiles_file}: {e}")

    def _save_profiles(self, profiles: Dict[str, ProfileData]) -> None:
        profiles_data = {name: profile.to_dict() for name, profile in profiles.items()}

        try:
            with open(self.profiles_file, 'w', encoding='utf-8') as f:
                json.dump(profiles_data, f, indent=2, ensure_ascii=False)
            os.chmod(self.profiles_file, 0o600)
        except OSError as e:
            raise ProfileError(f"Could not write profiles file {self.profiles_file}: {e}")
