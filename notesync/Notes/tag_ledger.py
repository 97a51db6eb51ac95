# tag_ledger.py
# Description: Keeps Tag.note_count consistent with note tag membership
#
# Imports
from typing import Iterable, List, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..DB.Notes_DB import NotesDB
from .models import Tag, DEFAULT_TAG_COLOR, new_id, utc_now
#
########################################################################################################################
#
# Functions and Classes:

def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Lowercase, strip and de-duplicate tag names, keeping first-seen order."""
    if not tags:
        return []
    seen = []
    for tag in tags:
        if not tag:
            continue
        name = tag.strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen


class TagLedger:
    """
    Maintains denormalized tag usage counts.

    Every method runs in a store transaction. When the caller already holds a
    transaction (the note mutation the ledger accompanies), the ledger update
    joins it, so both commit or roll back together.

    Trashing a note does not change counts; only permanent deletion does.
    """

    def __init__(self, db: NotesDB, default_color: str = DEFAULT_TAG_COLOR):
        self.db = db
        self.default_color = default_color

    def note_created(self, tags: Iterable[str]) -> None:
        self.tags_changed([], tags)

    def note_deleted(self, tags: Iterable[str]) -> None:
        """Permanent deletion: decrement every tag the note carried."""
        self.tags_changed(tags, [])

    def tags_changed(self, old_tags: Iterable[str], new_tags: Iterable[str]) -> None:
        old_set = set(normalize_tags(old_tags))
        new_set = set(normalize_tags(new_tags))
        removed = old_set - new_set
        added = new_set - old_set
        if not removed and not added:
            return

        with self.db.transaction():
            for name in sorted(removed):
                self._decrement(name)
            for name in sorted(added):
                self._increment(name)

    def _increment(self, name: str) -> None:
        tag = self.db.get_tag_by_name(name)
        if tag is None:
            self.db.insert_tag(Tag(id=new_id(), name=name, color=self.default_color,
                                   note_count=1, created_at=utc_now()))
            logger.debug(f"Created tag '{name}'")
        else:
            self.db.update_tag(tag.id, {'note_count': tag.note_count + 1})

    def _decrement(self, name: str) -> None:
        tag = self.db.get_tag_by_name(name)
        if tag is None:
            # Counts drifted; recompute() is the repair path
            logger.warning(f"Tag '{name}' missing while decrementing its count")
            return
        if tag.note_count <= 1:
            self.db.delete_tag(tag.id)
            logger.debug(f"Deleted tag '{name}' (no notes left)")
        else:
            self.db.update_tag(tag.id, {'note_count': tag.note_count - 1})

    def recompute(self) -> None:
        """
        Rebuild every count from the full local note set.

        Existing tags keep their id and color; tags no note references are deleted.
        """
        with self.db.transaction():
            counts = self.db.tag_counts_from_notes()
            existing = {t.name: t for t in self.db.list_tags()}

            for name, tag in existing.items():
                count = counts.get(name, 0)
                if count <= 0:
                    self.db.delete_tag(tag.id)
                elif count != tag.note_count:
                    self.db.update_tag(tag.id, {'note_count': count})

            for name, count in counts.items():
                if name not in existing:
                    self.db.insert_tag(Tag(id=new_id(), name=name, color=self.default_color,
                                           note_count=count, created_at=utc_now()))
        logger.debug(f"Recomputed tag counts for {len(counts)} tags")

    def set_color(self, name: str, color: str) -> bool:
        tag = self.db.get_tag_by_name(name)
        if tag is None:
            return False
        return self.db.update_tag(tag.id, {'color': color})

#
# End of tag_ledger.py
########################################################################################################################
