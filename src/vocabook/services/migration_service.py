"""One-shot transfer of the anonymous local data to a user's account.

Entities move in dependency order (words, progress, wordbooks, wordbook
items) so children can be re-pointed at their parent's remote id. Each row
is looked up by natural key before it is inserted, which makes a re-run after
a partial failure safe: rows already migrated are matched, not duplicated.
A row that fails is logged and skipped. Local rows are deleted only at the
very end, and only those whose migration (and that of every dependent) went
through.
"""
import logging
from typing import Callable, Dict, Optional, Set, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from vocabook import monitoring
from vocabook.exceptions import DuplicateKey, PartialMigrationFailure, RemoteUnavailable
from vocabook.models.quiz_models import MigrationResult
from vocabook.services.stores import PROGRESS_FIELDS, WORD_FIELDS, LocalStore, RemoteStore, row_values

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROW_ERRORS = (RemoteUnavailable, DuplicateKey, SQLAlchemyError)


class MigrationService:
    """Copies local words, progress and wordbooks to the remote store."""

    def __init__(self, local: LocalStore, remote: RemoteStore):
        self.local = local
        self.remote = remote

    def _attempt(
        self, result: MigrationResult, entity: str, local_id: int, action: Callable[[], T]
    ) -> Optional[T]:
        try:
            return action()
        except ROW_ERRORS as e:
            failure = PartialMigrationFailure(entity, local_id, e)
            result.failures.append(failure)
            monitoring.migration_rows.labels(entity=entity, outcome="failed").inc()
            logger.error(f"Skipping {entity} {local_id} during migration: {e}")
            return None

    def _record(self, result: MigrationResult, entity: str, inserted: bool) -> None:
        if inserted:
            monitoring.migration_rows.labels(entity=entity, outcome="inserted").inc()
        else:
            result.deduplicated_count += 1
            monitoring.migration_rows.labels(entity=entity, outcome="deduplicated").inc()

    def migrate(self) -> MigrationResult:
        """Run the migration and report what moved."""
        result = MigrationResult()

        words = self.local.get_words()
        progress_rows = self.local.get_progress()
        wordbooks = self.local.get_wordbooks()
        items = self.local.get_wordbook_items()
        logger.info(
            f"Migrating {len(words)} words, {len(progress_rows)} progress rows, "
            f"{len(wordbooks)} wordbooks, {len(items)} wordbook items"
        )

        # Local id -> remote id
        word_ids: Dict[int, int] = {}
        wordbook_ids: Dict[int, int] = {}
        # Local rows whose own migration failed, or whose dependents did
        blocked_words: Set[int] = set()
        blocked_wordbooks: Set[int] = set()
        done_progress: Set[int] = set()
        done_items: Set[int] = set()

        for word in words:
            def migrate_word(word=word):
                remote_id = self.remote.find_word(word.term, word.reading)
                if remote_id is not None:
                    return remote_id, False
                return self.remote.insert_word(row_values(word, WORD_FIELDS)), True

            outcome = self._attempt(result, "word", word.id, migrate_word)
            if outcome is None:
                blocked_words.add(word.id)
                continue
            word_ids[word.id], inserted = outcome
            if inserted:
                result.word_count += 1
            self._record(result, "word", inserted)

        for progress in progress_rows:
            remote_word_id = word_ids.get(progress.word_id)
            if remote_word_id is None:
                continue

            def migrate_progress(progress=progress, remote_word_id=remote_word_id):
                if self.remote.has_progress(remote_word_id):
                    return False
                self.remote.insert_progress(remote_word_id, row_values(progress, PROGRESS_FIELDS))
                return True

            inserted = self._attempt(result, "progress", progress.id, migrate_progress)
            if inserted is None:
                blocked_words.add(progress.word_id)
                continue
            done_progress.add(progress.id)
            if inserted:
                result.progress_count += 1
            self._record(result, "progress", inserted)

        for wordbook in wordbooks:
            def migrate_wordbook(wordbook=wordbook):
                remote_id = self.remote.find_wordbook(wordbook.name)
                if remote_id is not None:
                    return remote_id, False
                values = {"name": wordbook.name, "description": wordbook.description}
                return self.remote.insert_wordbook(values), True

            outcome = self._attempt(result, "wordbook", wordbook.id, migrate_wordbook)
            if outcome is None:
                blocked_wordbooks.add(wordbook.id)
                continue
            wordbook_ids[wordbook.id], inserted = outcome
            if inserted:
                result.wordbook_count += 1
            self._record(result, "wordbook", inserted)

        for item in items:
            remote_wordbook_id = wordbook_ids.get(item.wordbook_id)
            remote_word_id = word_ids.get(item.word_id)
            if remote_wordbook_id is None or remote_word_id is None:
                continue

            def migrate_item(remote_wordbook_id=remote_wordbook_id, remote_word_id=remote_word_id):
                if self.remote.has_wordbook_item(remote_wordbook_id, remote_word_id):
                    return False
                self.remote.insert_wordbook_item(remote_wordbook_id, remote_word_id)
                return True

            inserted = self._attempt(result, "wordbook_item", item.id, migrate_item)
            if inserted is None:
                blocked_words.add(item.word_id)
                blocked_wordbooks.add(item.wordbook_id)
                continue
            done_items.add(item.id)
            if inserted:
                result.item_count += 1
            self._record(result, "wordbook_item", inserted)

        # Items whose parents did not make it stay with them
        for item in items:
            if item.id not in done_items:
                blocked_words.add(item.word_id)
                blocked_wordbooks.add(item.wordbook_id)

        self._clear_local(
            result,
            word_ids={local_id for local_id in word_ids if local_id not in blocked_words},
            progress_ids={p.id for p in progress_rows if p.id in done_progress and p.word_id not in blocked_words},
            wordbook_ids={local_id for local_id in wordbook_ids if local_id not in blocked_wordbooks},
            item_ids=done_items,
        )

        logger.info(
            f"Migration finished: {result.word_count} words, {result.progress_count} progress, "
            f"{result.wordbook_count} wordbooks, {result.item_count} items inserted; "
            f"{result.deduplicated_count} already present; {len(result.failures)} failed"
        )
        return result

    def _clear_local(self, result: MigrationResult, word_ids, progress_ids, wordbook_ids, item_ids) -> None:
        try:
            self.local.delete_rows(word_ids, progress_ids, wordbook_ids, item_ids)
        except SQLAlchemyError as e:
            logger.error(f"Could not clear migrated local rows, they will be matched on retry: {e}")
            monitoring.error_count.labels(error_type="migration_cleanup").inc()
            result.failures.append(PartialMigrationFailure("local_cleanup", 0, e))


def migrate(local: LocalStore, remote: RemoteStore) -> MigrationResult:
    """Migrate the local store into the remote store."""
    return MigrationService(local, remote).migrate()
