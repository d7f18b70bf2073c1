"""
Encryption of platform API keys stored in the database
"""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from ..config import get_settings


class SecurityManager:
    """Encrypt and decrypt credentials at rest"""

    def __init__(self, encryption_key: Optional[str] = None):
        key = encryption_key or get_settings().encryption_key
        # Без ключа ключи API хранятся как есть (dev-окружение)
        self.fernet = Fernet(key.encode()) if key else None

    @property
    def enabled(self) -> bool:
        return self.fernet is not None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt_data(self, data: str) -> str:
        """Encrypt sensitive data"""
        if not self.fernet:
            return data
        return self.fernet.encrypt(data.encode()).decode()

    def decrypt_data(self, encrypted_data: str) -> str:
        """Decrypt sensitive data"""
        if not self.fernet:
            return encrypted_data
        try:
            return self.fernet.decrypt(encrypted_data.encode()).decode()
        except InvalidToken:
            raise ValueError("Stored secret cannot be decrypted with the configured key")
