from .container import Container
from .file_repos import CredentialVault, FileTaskStore, FileUserStore

__all__ = ["Container", "CredentialVault", "FileTaskStore", "FileUserStore"]
