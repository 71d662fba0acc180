"""Exception taxonomy for the FoodReview client.

Every failure raised inside a controller operation derives from
``FoodReviewError`` and carries a message that can be shown to the user as-is.
"""

from typing import Optional

GENERIC_CREDENTIAL_MESSAGE = "Incorrect password or token decryption failed."


class FoodReviewError(Exception):
    """Base exception for client errors."""
    pass


# --- Credentials ---

class CredentialError(FoodReviewError):
    def __init__(self, message: str = GENERIC_CREDENTIAL_MESSAGE):
        super().__init__(message)


class InvalidPassphraseError(CredentialError):
    """Wrong passphrase, or the decrypted token failed the shape check."""
    pass


class CredentialBlobError(CredentialError):
    """The encrypted blob is missing or malformed."""
    pass


class CredentialRejectedError(CredentialError):
    """The remote store refused the token (401)."""

    def __init__(self, message: str = "Session expired, please log in again."):
        super().__init__(message)


# --- Remote store ---

class StoreError(FoodReviewError):
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        if status is not None:
            message = f"{message} (HTTP {status})"
        super().__init__(message)


class ConflictError(StoreError):
    """The collection changed remotely since it was read."""

    def __init__(self, message: str = "Reviews were changed elsewhere. Refresh and try again.", status: Optional[int] = 409):
        super().__init__(message, status)


# --- Media ---

class MediaError(FoodReviewError):
    pass


class UnsupportedMediaTypeError(MediaError):
    def __init__(self, media_type: Optional[str]):
        self.media_type = media_type
        super().__init__(f"Unsupported file type '{media_type or 'unknown'}'. Please choose an image.")


class FileTooLargeError(MediaError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Image is too large ({size / (1024 * 1024):.1f} MB, max {limit / (1024 * 1024):.0f} MB). "
            "Try a smaller image."
        )


class FileReadTimeoutError(MediaError):
    def __init__(self, message: str = "Reading the image took too long. Try a smaller image."):
        super().__init__(message)


class DecodeTimeoutError(MediaError):
    def __init__(self, message: str = "Image processing timed out. Try a smaller image."):
        super().__init__(message)


class CompressionFailedError(MediaError):
    def __init__(self, message: str = "Could not compress the image. Try a different or smaller image."):
        super().__init__(message)


class UploadTimeoutError(MediaError):
    def __init__(self, message: str = "Image upload timed out. Check your connection or try a smaller image."):
        super().__init__(message)
