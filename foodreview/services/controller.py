"""Application state and the operations that mutate it.

Mutating operations (login, refresh, add, delete) are exclusive: the busy flag
is checked and set before the first await, so on a single event loop a second
call while one is pending returns None without doing anything.
"""

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, Union

from pydantic import ValidationError

from ..core.credentials import unwrap
from ..errors import (
    ConflictError,
    CredentialError,
    CredentialRejectedError,
    FoodReviewError,
    InvalidPassphraseError,
    MediaError,
)
from ..media.pipeline import ImagePipeline, Preview, SelectedFile
from ..schemas import Review, ReviewCreate
from ..storage.github_contents import ArtifactFetchResult, GitHubContentStore
from .session import SessionCache

logger = logging.getLogger("foodreview.controller")

FORM_ERROR_MESSAGE = "Please fill in all fields correctly."
BUSY_IMAGE_MESSAGE = "Please wait for the current save to finish before choosing another image."


class Presenter(Protocol):
    def render(self, reviews: list[Review], logged_in: bool) -> None: ...

    def report_error(self, message: str) -> None: ...

    def report_progress(self, percent: int) -> None: ...


@dataclass
class AppState:
    reviews: list[Review] = field(default_factory=list)
    credential: Optional[str] = None
    busy: bool = False
    pending_image: Optional[SelectedFile] = None
    preview: Optional[Preview] = None


def without_index(reviews: list[Review], index: int) -> list[Review]:
    if index < 0 or index >= len(reviews):
        raise IndexError(index)
    return reviews[:index] + reviews[index + 1:]


def exclusive(fn):
    @functools.wraps(fn)
    async def wrapper(self: "ReviewController", *args, **kwargs):
        if self.state.busy:
            logger.debug(f"{fn.__name__} ignored, another operation is in flight")
            return None
        self.state.busy = True
        try:
            return await fn(self, *args, **kwargs)
        except CredentialRejectedError as e:
            self._drop_credential()
            self.presenter.report_error(str(e))
        except FoodReviewError as e:
            logger.warning(f"{fn.__name__} failed: {e}")
            self.presenter.report_error(str(e))
        except ValidationError as e:
            logger.info(f"{fn.__name__} rejected input: {e.error_count()} error(s)")
            self.presenter.report_error(FORM_ERROR_MESSAGE)
        finally:
            self.state.busy = False
        return None

    return wrapper


class ReviewController:
    def __init__(
        self,
        store: GitHubContentStore,
        presenter: Presenter,
        pipeline: Optional[ImagePipeline] = None,
        session: Optional[SessionCache] = None,
    ):
        self.store = store
        self.presenter = presenter
        self.pipeline = pipeline or ImagePipeline()
        self.session = session or SessionCache()
        self.state = AppState()

    @property
    def logged_in(self) -> bool:
        return self.state.credential is not None

    def _render(self) -> None:
        self.presenter.render(list(self.state.reviews), self.logged_in)

    def _drop_credential(self) -> None:
        self.session.clear()
        self.state.credential = None
        self._render()

    def _require_credential(self) -> str:
        if self.state.credential is None:
            raise CredentialError("Please log in first.")
        return self.state.credential

    # --- Session ---

    async def start(self) -> None:
        """Pick up a cached credential, then load the collection."""
        self.state.credential = self.session.get_credential()
        await self.refresh()

    @exclusive
    async def login(self, passphrase: str) -> bool:
        blob = await self.store.fetch_credential_blob()
        token = unwrap(blob, passphrase)
        try:
            reviews = await self.store.fetch_collection(token)
        except CredentialRejectedError:
            # Decrypted fine but GitHub refuses it; same message as a bad passphrase
            raise InvalidPassphraseError()
        self.session.set_credential(token)
        self.state.credential = token
        self.state.reviews = reviews
        logger.info(f"Logged in, {len(reviews)} reviews loaded")
        self._render()
        return True

    def logout(self) -> None:
        self.session.clear()
        self.state.credential = None
        self.clear_image()
        self._render()

    @exclusive
    async def refresh(self) -> list[Review]:
        self.state.reviews = await self.store.fetch_collection(self.state.credential)
        self._render()
        return self.state.reviews

    # --- Image selection ---

    async def select_image(self, file: SelectedFile) -> Optional[Preview]:
        # The pipeline is busy with the pending image until the save settles
        if self.state.busy:
            self.presenter.report_error(BUSY_IMAGE_MESSAGE)
            return None
        try:
            preview = await self.pipeline.select(file)
        except MediaError as e:
            self.state.pending_image = None
            self.state.preview = None
            self.presenter.report_error(str(e))
            return None
        self.state.pending_image = file
        self.state.preview = preview
        return preview

    def clear_image(self) -> None:
        self.pipeline.reset()
        self.state.pending_image = None
        self.state.preview = None

    async def load_image(self, reference: str) -> ArtifactFetchResult:
        return await self.store.fetch_artifact(reference, self.state.credential)

    # --- Mutations ---

    @exclusive
    async def add_review(self, form: Union[ReviewCreate, dict]) -> Review:
        created_at = datetime.now(timezone.utc)
        credential = self._require_credential()
        if not isinstance(form, ReviewCreate):
            form = ReviewCreate.model_validate(form)

        image_ref = None
        image = self.state.pending_image
        if image is not None:
            self.presenter.report_progress(10)
            artifact = await self.pipeline.compress(image)
            self.presenter.report_progress(40)
            image_ref = await self.store.upload_artifact(artifact, credential)
            self.presenter.report_progress(70)

        review = form.to_review(image=image_ref, now=created_at)

        reviews, sha = await self.store.fetch_versioned(credential)
        updated = reviews + [review]
        await self.store.save_collection(
            updated,
            credential,
            expected_sha=sha,
            message=f"Add review: {review.restaurant} - {review.food_item}",
        )
        self.state.reviews = updated
        if self.state.pending_image is image:
            self.clear_image()
        if image is not None:
            self.presenter.report_progress(100)
        self._render()
        return review

    @exclusive
    async def delete_review(self, index: int) -> Review:
        credential = self._require_credential()
        if not 0 <= index < len(self.state.reviews):
            raise FoodReviewError(f"No review at position {index}.")
        target = self.state.reviews[index]

        reviews, sha = await self.store.fetch_versioned(credential)
        try:
            position = reviews.index(target)
        except ValueError:
            raise ConflictError("That review was changed elsewhere. Refresh and try again.")

        updated = without_index(reviews, position)
        await self.store.save_collection(
            updated,
            credential,
            expected_sha=sha,
            message=f"Delete review: {target.restaurant} - {target.food_item}",
        )
        self.state.reviews = updated
        self._render()
        return target
