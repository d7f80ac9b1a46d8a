"""Tests for the chapter page processing state machine.

Tests cover:
- Commit validation (page list, draft) before any job is created
- The happy path: commit -> job -> published pages
- Failure keeps retry data; retry publishes once the page exists
- Exclusivity: one outstanding job per chapter
- Storage cleanup after a publish (moved prefix, dropped pages)
- Chapter creation, polling and stalled-job recovery
"""

import threading
from datetime import UTC, datetime, timedelta

import pytest

from folio.db.models import Chapter, ChapterDraft, ProcessingState
from folio.errors import ApiError, ApiErrorCode, ConflictError, NotRetryableError
from folio.jobs import JobState, chapter_resource_key
from folio.services.drafts import create_draft, get_draft_leases, open_edit_draft
from folio.services.processing import (
    INTERRUPTED_ERROR,
    MAX_STATUS_IDS,
    commit_chapter_pages,
    create_chapter,
    get_chapter,
    get_processing_status,
    mark_stalled_failed,
    normalize_page_ids,
    retry_chapter_processing,
    run_chapter_processing,
)
from folio.storage import FakeObjectStore, StorageError, build_page_key
from tests.helpers import (
    age_draft,
    create_test_chapter,
    create_test_manga,
    new_page_id,
    upload_test_pages,
)


def _reload(db_session, chapter_id: int) -> Chapter:
    db_session.expire_all()
    return db_session.get(Chapter, chapter_id)


def _page_keys(store, prefix: str) -> list[str]:
    return store.list_keys(prefix + "/")


def _commit(db_session, chapter_id, token, page_ids, store, runner):
    return commit_chapter_pages(db_session, chapter_id, token, page_ids, store, runner=runner)


@pytest.fixture
def chapter_id(db_session, manga_id) -> int:
    return create_test_chapter(db_session, manga_id, number=7)


@pytest.fixture
def draft(db_session, manga_id, store):
    return create_draft(db_session, manga_id, store)


class BlockingStore(FakeObjectStore):
    """Fake store whose listings wait until released while `hold` is set."""

    def __init__(self):
        super().__init__()
        self.hold = True
        self.entered = threading.Event()
        self.release = threading.Event()

    def list_keys(self, prefix: str) -> list[str]:
        if self.hold:
            self.entered.set()
            self.release.wait(5)
        return super().list_keys(prefix)


class TestNormalizePageIds:
    """Page lists are validated and deduplicated at commit time."""

    def test_duplicates_dropped_keeping_order(self):
        a, b = new_page_id(), new_page_id()
        assert normalize_page_ids([a, a, b, a]) == [a, b]

    def test_empty_rejected(self):
        with pytest.raises(ApiError) as exc_info:
            normalize_page_ids([])
        assert exc_info.value.code == ApiErrorCode.E_INVALID_PAGE_LIST

    def test_cap_is_inclusive(self):
        ids = [new_page_id() for _ in range(220)]
        assert normalize_page_ids(ids) == ids

    def test_over_cap_rejected(self):
        with pytest.raises(ApiError) as exc_info:
            normalize_page_ids([new_page_id() for _ in range(221)])
        assert exc_info.value.code == ApiErrorCode.E_INVALID_PAGE_LIST
        assert "220" in exc_info.value.message

    def test_cap_counts_unique_ids(self):
        ids = [new_page_id() for _ in range(220)]
        assert len(normalize_page_ids(ids + ids[:5])) == 220

    @pytest.mark.parametrize("bad", ["../etc", "A" * 24, 42, None])
    def test_malformed_id_rejected(self, bad):
        with pytest.raises(ApiError) as exc_info:
            normalize_page_ids([new_page_id(), bad])
        assert exc_info.value.code == ApiErrorCode.E_INVALID_PAGE_LIST
        assert "Page 2" in exc_info.value.message

    def test_not_a_list(self):
        with pytest.raises(ApiError) as exc_info:
            normalize_page_ids("abc")
        assert exc_info.value.code == ApiErrorCode.E_INVALID_PAGE_LIST


class TestCommitValidation:
    """Rejected commits never create a job or touch storage."""

    def test_path_traversal_page_id(self, db_session, chapter_id, draft, store, runner):
        with pytest.raises(ApiError) as exc_info:
            _commit(db_session, chapter_id, draft.token, ["../etc"], store, runner)

        assert exc_info.value.status_code == 400
        assert len(runner.registry) == 0
        assert store.calls == []
        assert _reload(db_session, chapter_id).processing_state is None

    def test_empty_page_list(self, db_session, chapter_id, draft, store, runner):
        with pytest.raises(ApiError) as exc_info:
            _commit(db_session, chapter_id, draft.token, [], store, runner)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_PAGE_LIST
        assert len(runner.registry) == 0

    def test_malformed_token(self, db_session, chapter_id, store, runner):
        with pytest.raises(ApiError) as exc_info:
            _commit(db_session, chapter_id, "nope", [new_page_id()], store, runner)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_DRAFT

    def test_expired_draft(self, db_session, chapter_id, draft, store, runner):
        get_draft_leases().forget(draft.token)
        age_draft(db_session, draft.token, datetime.now(UTC) - timedelta(days=1))

        with pytest.raises(ApiError) as exc_info:
            commit_chapter_pages(
                db_session, chapter_id, draft.token, [new_page_id()], store, runner=runner
            )
        assert exc_info.value.code == ApiErrorCode.E_INVALID_DRAFT

    def test_draft_of_other_manga(self, db_session, chapter_id, store, runner):
        other = create_draft(db_session, create_test_manga(db_session, "Other"), store)

        with pytest.raises(ApiError) as exc_info:
            commit_chapter_pages(
                db_session, chapter_id, other.token, [new_page_id()], store, runner=runner
            )
        assert exc_info.value.code == ApiErrorCode.E_INVALID_DRAFT

    def test_unknown_chapter(self, db_session, draft, store, runner):
        with pytest.raises(ApiError) as exc_info:
            _commit(db_session, 9999, draft.token, [new_page_id()], store, runner)
        assert exc_info.value.code == ApiErrorCode.E_CHAPTER_NOT_FOUND


class TestCommitAndFinalize:
    """Accepted commits publish pages once the job finalizes."""

    def test_pages_published(self, db_session, chapter_id, draft, store, runner):
        ids = [new_page_id() for _ in range(3)]
        upload_test_pages(db_session, draft.token, ids, store)

        accepted = _commit(db_session, chapter_id, draft.token, ids, store, runner)

        assert accepted.chapter_id == chapter_id
        assert accepted.state == "processing"
        status = runner.wait(accepted.job_id, timeout=10)
        assert status.state == JobState.succeeded
        assert status.type == "chapter_processing"

        chapter = _reload(db_session, chapter_id)
        assert chapter.pages == 3
        assert chapter.pages_prefix == draft.pages_prefix
        assert chapter.page_ids == ids
        assert chapter.pages_updated_at is not None
        assert chapter.processing_state is None
        assert chapter.processing_error is None
        assert chapter.processing_draft_token is None
        assert chapter.processing_pages is None
        assert db_session.get(ChapterDraft, draft.token).consumed_at is not None

    def test_state_is_processing_until_job_runs(self, manga_id, db_session, runner):
        store = BlockingStore()
        chapter_id = create_test_chapter(db_session, manga_id, number=3)
        draft = create_draft(db_session, manga_id, store)
        ids = [new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)

        accepted = _commit(db_session, chapter_id, draft.token, ids, store, runner)
        assert store.entered.wait(5)

        assert _reload(db_session, chapter_id).processing_state == ProcessingState.processing
        assert _reload(db_session, chapter_id).processing_pages == ids
        store.release.set()
        runner.wait(accepted.job_id, timeout=10)
        assert _reload(db_session, chapter_id).processing_state is None

    def test_duplicates_collapsed(self, db_session, chapter_id, draft, store, runner):
        a, b = new_page_id(), new_page_id()
        upload_test_pages(db_session, draft.token, [a, b], store)

        accepted = commit_chapter_pages(
            db_session, chapter_id, draft.token, [a, a, b], store, runner=runner
        )
        runner.wait(accepted.job_id, timeout=10)

        chapter = _reload(db_session, chapter_id)
        assert chapter.pages == 2
        assert chapter.page_ids == [a, b]

    def test_consumed_draft_cannot_be_reused(self, db_session, chapter_id, draft, store, runner):
        ids = [new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)
        runner.wait(
            _commit(db_session, chapter_id, draft.token, ids, store, runner).job_id,
            timeout=10,
        )
        db_session.expire_all()

        with pytest.raises(ApiError) as exc_info:
            _commit(db_session, chapter_id, draft.token, ids, store, runner)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_DRAFT


class TestFailureAndRetry:
    """Failed jobs keep retry data; retry re-runs them."""

    def test_missing_page_then_retry(self, db_session, chapter_id, draft, store, runner):
        p1, p2, p3 = (new_page_id() for _ in range(3))
        upload_test_pages(db_session, draft.token, [p1, p2], store)

        accepted = commit_chapter_pages(
            db_session, chapter_id, draft.token, [p1, p2, p3], store, runner=runner
        )
        status = runner.wait(accepted.job_id, timeout=10)

        assert status.state == JobState.failed
        chapter = _reload(db_session, chapter_id)
        assert chapter.processing_state == ProcessingState.failed
        assert chapter.processing_error == f"Page 3 ({p3}) is missing from storage"
        assert chapter.processing_draft_token == draft.token
        assert chapter.processing_pages == [p1, p2, p3]
        assert chapter.pages == 0
        assert chapter.pages_prefix is None

        upload_test_pages(db_session, draft.token, [p3], store)
        retried = retry_chapter_processing(db_session, chapter_id, store, runner=runner)
        assert runner.wait(retried.job_id, timeout=10).state == JobState.succeeded

        chapter = _reload(db_session, chapter_id)
        assert chapter.processing_state is None
        assert chapter.pages == 3
        assert chapter.page_ids == [p1, p2, p3]

    def test_error_counts_further_missing_pages(
        self, db_session, chapter_id, draft, store, runner
    ):
        ids = [new_page_id() for _ in range(4)]
        upload_test_pages(db_session, draft.token, ids[:1], store)

        accepted = _commit(db_session, chapter_id, draft.token, ids, store, runner)
        runner.wait(accepted.job_id, timeout=10)

        assert _reload(db_session, chapter_id).processing_error == (
            f"Page 2 ({ids[1]}) is missing from storage, and 2 more"
        )

    def test_storage_error_does_not_leak_details(
        self, db_session, chapter_id, draft, store, runner
    ):
        ids = [new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)
        store.failures["list_keys"] = StorageError("S3 SignatureDoesNotMatch")

        accepted = _commit(db_session, chapter_id, draft.token, ids, store, runner)
        status = runner.wait(accepted.job_id, timeout=10)

        chapter = _reload(db_session, chapter_id)
        assert chapter.processing_state == ProcessingState.failed
        assert "S3" not in chapter.processing_error
        assert "S3" not in status.error

    def test_recommit_after_failure(self, db_session, chapter_id, draft, store, runner):
        ids = [new_page_id()]
        accepted = _commit(db_session, chapter_id, draft.token, ids, store, runner)
        runner.wait(accepted.job_id, timeout=10)
        assert _reload(db_session, chapter_id).processing_state == ProcessingState.failed

        upload_test_pages(db_session, draft.token, ids, store)
        accepted = _commit(db_session, chapter_id, draft.token, ids, store, runner)

        assert runner.wait(accepted.job_id, timeout=10).state == JobState.succeeded

    def test_retry_idle_chapter_refused(self, db_session, chapter_id, store, runner):
        with pytest.raises(NotRetryableError):
            retry_chapter_processing(db_session, chapter_id, store, runner=runner)
        assert len(runner.registry) == 0

    def test_retry_without_retry_data_refused(self, db_session, manga_id, store, runner):
        chapter_id = create_test_chapter(
            db_session, manga_id, number=2, processing_state=ProcessingState.failed
        )

        with pytest.raises(NotRetryableError):
            retry_chapter_processing(db_session, chapter_id, store, runner=runner)

    def test_retry_with_expired_draft_refused(self, db_session, chapter_id, draft, store, runner):
        accepted = commit_chapter_pages(
            db_session, chapter_id, draft.token, [new_page_id()], store, runner=runner
        )
        runner.wait(accepted.job_id, timeout=10)
        get_draft_leases().forget(draft.token)
        age_draft(db_session, draft.token, datetime.now(UTC) - timedelta(days=1))

        with pytest.raises(NotRetryableError):
            retry_chapter_processing(db_session, chapter_id, store, runner=runner)

    def test_retry_unknown_chapter(self, db_session, store, runner):
        with pytest.raises(ApiError) as exc_info:
            retry_chapter_processing(db_session, 9999, store, runner=runner)
        assert exc_info.value.code == ApiErrorCode.E_CHAPTER_NOT_FOUND


class TestExclusivity:
    """Only one processing job per chapter at a time."""

    def test_second_commit_conflicts(self, manga_id, db_session, runner):
        store = BlockingStore()
        chapter_id = create_test_chapter(db_session, manga_id, number=3)
        draft = create_draft(db_session, manga_id, store)
        ids = [new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)
        first = _commit(db_session, chapter_id, draft.token, ids, store, runner)
        assert store.entered.wait(5)

        with pytest.raises(ConflictError) as exc_info:
            _commit(db_session, chapter_id, draft.token, ids, store, runner)

        assert exc_info.value.code == ApiErrorCode.E_ALREADY_PROCESSING
        assert exc_info.value.status_code == 409
        store.release.set()
        assert runner.wait(first.job_id, timeout=10).state == JobState.succeeded

    def test_stale_processing_row_conflicts(self, db_session, manga_id, draft, store, runner):
        chapter_id = create_test_chapter(
            db_session, manga_id, number=4, processing_state=ProcessingState.processing
        )

        with pytest.raises(ConflictError):
            commit_chapter_pages(
                db_session, chapter_id, draft.token, [new_page_id()], store, runner=runner
            )
        assert len(runner.registry) == 0
        assert not runner.is_busy(chapter_resource_key(chapter_id))

    def test_held_slot_conflicts(self, db_session, chapter_id, draft, store, runner):
        with runner.exclusive(chapter_resource_key(chapter_id)):
            with pytest.raises(ConflictError):
                commit_chapter_pages(
                    db_session, chapter_id, draft.token, [new_page_id()], store, runner=runner
                )
        assert _reload(db_session, chapter_id).processing_state is None

    def test_concurrent_commits_admit_one(self, manga_id, db_session, session_factory, runner):
        store = BlockingStore()
        chapter_id = create_test_chapter(db_session, manga_id, number=5)
        draft = create_draft(db_session, manga_id, store)
        ids = [new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)
        barrier = threading.Barrier(2)
        accepted = []
        refused = []

        def commit():
            db = session_factory()
            try:
                barrier.wait(5)
                accepted.append(_commit(db, chapter_id, draft.token, ids, store, runner))
            except ConflictError as e:
                refused.append(e.code)
            finally:
                db.close()

        threads = [threading.Thread(target=commit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        store.release.set()

        assert len(accepted) == 1
        assert refused == [ApiErrorCode.E_ALREADY_PROCESSING]
        assert runner.wait(accepted[0].job_id, timeout=10).state == JobState.succeeded


class TestDraftPublishedOnce:
    """A draft's prefix can back at most one chapter."""

    def test_draft_held_by_other_chapter_rejected(self, manga_id, db_session, runner):
        store = BlockingStore()
        first = create_test_chapter(db_session, manga_id, number=7)
        second = create_test_chapter(db_session, manga_id, number=8)
        draft = create_draft(db_session, manga_id, store)
        ids = [new_page_id(), new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)
        accepted = _commit(db_session, first, draft.token, ids, store, runner)
        assert store.entered.wait(5)

        with pytest.raises(ApiError) as exc_info:
            _commit(db_session, second, draft.token, ids, store, runner)

        assert exc_info.value.code == ApiErrorCode.E_INVALID_DRAFT
        assert not runner.is_busy(chapter_resource_key(second))
        store.release.set()
        assert runner.wait(accepted.job_id, timeout=10).state == JobState.succeeded
        assert _reload(db_session, second).pages_prefix is None

    def test_second_finalize_rolls_back(
        self, manga_id, db_session, session_factory, runner
    ):
        store = BlockingStore()
        first = create_test_chapter(db_session, manga_id, number=7)
        draft = create_draft(db_session, manga_id, store)
        ids = [new_page_id(), new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)
        accepted = _commit(db_session, first, draft.token, ids, store, runner)
        assert store.entered.wait(5)
        # Armed directly, as if both commits had raced past validation
        second = create_test_chapter(
            db_session,
            manga_id,
            number=8,
            processing_state=ProcessingState.processing,
            processing_draft_token=draft.token,
            processing_pages=ids,
        )
        store.hold = False
        run_chapter_processing(session_factory, second, store=store)

        store.release.set()

        assert runner.wait(accepted.job_id, timeout=10).state == JobState.failed
        published = _reload(db_session, second)
        assert published.pages_prefix == draft.pages_prefix
        loser = _reload(db_session, first)
        assert loser.processing_state == ProcessingState.failed
        assert loser.processing_error == "Draft was already used by another chapter"
        assert loser.pages_prefix is None
        assert loser.pages == 0


class TestStorageCleanup:
    """Publishing removes storage the chapter no longer references."""

    def _publish(self, db_session, chapter_id, token, ids, store, runner):
        accepted = _commit(db_session, chapter_id, token, ids, store, runner)
        assert runner.wait(accepted.job_id, timeout=10).state == JobState.succeeded
        return _reload(db_session, chapter_id)

    def test_unlisted_uploads_removed(self, db_session, chapter_id, draft, store, runner):
        p1, p2, p3 = (new_page_id() for _ in range(3))
        upload_test_pages(db_session, draft.token, [p1, p2, p3], store)

        self._publish(db_session, chapter_id, draft.token, [p1, p2], store, runner)

        assert _page_keys(store, draft.pages_prefix) == sorted(
            build_page_key(draft.pages_prefix, pid) for pid in (p1, p2)
        )

    def test_edit_moves_prefix_and_drops_pages(
        self, db_session, chapter_id, draft, store, runner
    ):
        p1, p2, p3 = (new_page_id() for _ in range(3))
        upload_test_pages(db_session, draft.token, [p1, p2, p3], store)
        old = self._publish(db_session, chapter_id, draft.token, [p1, p2, p3], store, runner)

        edit = open_edit_draft(db_session, chapter_id, store)
        chapter = self._publish(db_session, chapter_id, edit["token"], [p3, p1], store, runner)

        assert chapter.pages == 2
        assert chapter.page_ids == [p3, p1]
        assert chapter.pages_prefix == edit["pages_prefix"]
        assert _page_keys(store, old.pages_prefix) == []
        assert _page_keys(store, chapter.pages_prefix) == sorted(
            build_page_key(chapter.pages_prefix, pid) for pid in (p1, p3)
        )
        # The superseded draft row goes with its prefix; the new one stays
        assert db_session.get(ChapterDraft, draft.token) is None
        assert db_session.get(ChapterDraft, edit["token"]) is not None

    def test_cleanup_failure_keeps_publish(self, db_session, chapter_id, draft, store, runner):
        p1, p2 = new_page_id(), new_page_id()
        upload_test_pages(db_session, draft.token, [p1, p2], store)
        store.failures["delete_versions"] = StorageError("delete failed")

        chapter = self._publish(db_session, chapter_id, draft.token, [p1], store, runner)

        assert chapter.pages == 1
        assert chapter.processing_state is None


class TestCreateChapter:
    """Chapters can be created directly from a draft."""

    def test_creates_and_publishes(self, db_session, manga_id, draft, store, runner):
        ids = [new_page_id(), new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)

        accepted = create_chapter(
            db_session, manga_id, 12.5, "Side story", draft.token, ids, store, runner=runner
        )
        runner.wait(accepted.job_id, timeout=10)

        chapter = _reload(db_session, accepted.chapter_id)
        assert chapter.number == 12.5
        assert chapter.title == "Side story"
        assert chapter.pages == 2

    def test_duplicate_number(self, db_session, manga_id, chapter_id, draft, store, runner):
        with pytest.raises(ConflictError) as exc_info:
            create_chapter(
                db_session, manga_id, 7, None, draft.token, [new_page_id()], store, runner=runner
            )
        assert exc_info.value.code == ApiErrorCode.E_CHAPTER_EXISTS

    def test_unknown_manga(self, db_session, draft, store, runner):
        with pytest.raises(ApiError) as exc_info:
            create_chapter(
                db_session, 9999, 1, None, draft.token, [new_page_id()], store, runner=runner
            )
        assert exc_info.value.code == ApiErrorCode.E_MANGA_NOT_FOUND

    def test_invalid_pages_create_nothing(self, db_session, manga_id, draft, store, runner):
        with pytest.raises(ApiError):
            create_chapter(db_session, manga_id, 1, None, draft.token, [], store, runner=runner)
        assert db_session.query(Chapter).count() == 0


class TestPolling:
    """Batch status polling and single chapter reads."""

    def test_states_in_request_order(self, db_session, manga_id):
        idle = create_test_chapter(db_session, manga_id, number=1, pages=5)
        failed = create_test_chapter(
            db_session,
            manga_id,
            number=2,
            processing_state=ProcessingState.failed,
            processing_error="Page 1 (x) is missing from storage",
        )
        busy = create_test_chapter(
            db_session, manga_id, number=3, processing_state=ProcessingState.processing
        )

        result = get_processing_status(db_session, [busy, 9999, idle, failed, idle])

        assert [(s.id, s.state) for s in result] == [
            (busy, "processing"),
            (idle, "idle"),
            (failed, "failed"),
        ]
        assert result[1].pages == 5
        assert result[2].error == "Page 1 (x) is missing from storage"

    def test_request_capped(self, db_session, manga_id):
        ids = [create_test_chapter(db_session, manga_id, number=n) for n in range(90)]

        assert len(get_processing_status(db_session, ids)) == MAX_STATUS_IDS

    def test_empty(self, db_session):
        assert get_processing_status(db_session, []) == []

    def test_get_chapter(self, db_session, chapter_id):
        chapter = get_chapter(db_session, chapter_id)
        assert chapter.id == chapter_id
        assert chapter.number == 7
        assert chapter.processing_state is None

    def test_get_unknown_chapter(self, db_session):
        with pytest.raises(ApiError) as exc_info:
            get_chapter(db_session, 9999)
        assert exc_info.value.code == ApiErrorCode.E_CHAPTER_NOT_FOUND


class TestStalledRecovery:
    """Operators can flag interrupted processing as failed."""

    def _stalled(self, db_session, manga_id, number, age: timedelta) -> int:
        return create_test_chapter(
            db_session,
            manga_id,
            number=number,
            processing_state=ProcessingState.processing,
            processing_draft_token="a" * 32,
            processing_pages=[new_page_id()],
            processing_updated_at=datetime.now(UTC) - age,
        )

    def test_old_processing_flagged(self, db_session, manga_id, runner):
        stalled = self._stalled(db_session, manga_id, 1, timedelta(hours=2))
        recent = self._stalled(db_session, manga_id, 2, timedelta(seconds=30))

        flagged = mark_stalled_failed(db_session, 900, runner=runner)

        assert flagged == [stalled]
        chapter = _reload(db_session, stalled)
        assert chapter.processing_state == ProcessingState.failed
        assert chapter.processing_error == INTERRUPTED_ERROR
        assert chapter.processing_pages is not None
        assert _reload(db_session, recent).processing_state == ProcessingState.processing

    def test_live_job_not_flagged(self, db_session, manga_id, runner):
        stalled = self._stalled(db_session, manga_id, 1, timedelta(hours=2))

        with runner.exclusive(chapter_resource_key(stalled)):
            assert mark_stalled_failed(db_session, 900, runner=runner) == []

    def test_flagged_chapter_can_retry(self, db_session, manga_id, store, runner):
        draft = create_draft(db_session, manga_id, store)
        ids = [new_page_id()]
        upload_test_pages(db_session, draft.token, ids, store)
        chapter_id = create_test_chapter(
            db_session,
            manga_id,
            number=1,
            processing_state=ProcessingState.processing,
            processing_draft_token=draft.token,
            processing_pages=ids,
            processing_updated_at=datetime.now(UTC) - timedelta(hours=1),
        )
        mark_stalled_failed(db_session, 900, runner=runner)

        accepted = retry_chapter_processing(db_session, chapter_id, store, runner=runner)

        assert runner.wait(accepted.job_id, timeout=10).state == JobState.succeeded
        assert _reload(db_session, chapter_id).pages == 1
