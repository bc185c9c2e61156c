"""Transport clients for the remote services the pipeline talks to."""

from .classification_api import ClassificationApiClient
from .customs_api import CustomsApiClient
from .sftp_client import SftpUploader

__all__ = ["ClassificationApiClient", "CustomsApiClient", "SftpUploader"]
