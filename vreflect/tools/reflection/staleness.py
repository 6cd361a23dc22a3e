"""Re-ingest source, target and annotation files that changed since the last run."""

import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

from vreflect.libs.jsonl_store import load_json, save_json
from .checkpoint import load_comments, load_segments, save_comments, save_segments
from .comments import merge_annotations, parse_threads
from .models import Segment
from .settings import ReflectionSettings
from .state import mark_comment_change, oldest_translation, reset_segment_to

LOG = logging.getLogger(__name__)

TrackingModTimes = Dict[str, Dict[str, float]]
Reader = Callable[[str], Dict[str, str]]


def read_text_map(path: str) -> Dict[str, str]:
    """Read a JSON object mapping segment references to text."""
    data = load_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must hold a JSON object of reference to text")
    return {str(ref): "" if text is None else str(text) for ref, text in data.items()}


class StalenessTracker:
    """
    Tracks modification times of the files that feed the segment collection.

    Each watched file has an observed time (its newest known mtime) and an
    updated time (the mtime it had when it was last ingested). A file is
    stale while observed is newer than updated. Times are persisted in
    mod_times_file so a restart only re-ingests what changed.
    """

    def __init__(self, settings: ReflectionSettings, reader: Optional[Reader] = None):
        self.settings = settings
        self.reader = reader or read_text_map
        self.project_dir = Path(settings.project_dir)
        self.mod_times_path = settings.resolve_path(settings.mod_times_file)

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.project_dir).as_posix()

    def list_watched_files(self) -> Dict[str, float]:
        """Current mtimes of every watched file, keyed by project-relative path."""
        found: Dict[str, float] = {}
        for folder, suffix in ((self.settings.source_dir, self.settings.source_suffix),
                               (self.settings.target_dir, self.settings.target_suffix)):
            directory = self.project_dir / folder
            if directory.is_dir():
                for path in sorted(directory.rglob(f"*{suffix}")):
                    if path.is_file():
                        found[self._relative(path)] = path.stat().st_mtime
        annotations = self.project_dir / self.settings.annotations_file
        if annotations.is_file():
            found[self._relative(annotations)] = annotations.stat().st_mtime
        return found

    def load_tracking(self) -> TrackingModTimes:
        return load_json(self.mod_times_path, default={})

    def observe(self) -> TrackingModTimes:
        """Record the current mtimes as observed and return the full tracking table."""
        tracking = self.load_tracking()
        changed = False
        for file, mod_time in self.list_watched_files().items():
            entry = tracking.get(file)
            if entry is None:
                tracking[file] = {"observed_mod_time": mod_time, "updated_mod_time": 0.0}
                changed = True
            elif entry.get("observed_mod_time", 0.0) < mod_time:
                entry["observed_mod_time"] = mod_time
                changed = True
        if changed:
            save_json(self.mod_times_path, tracking)
        return tracking

    @staticmethod
    def get_files_to_update(tracking: TrackingModTimes) -> TrackingModTimes:
        return {
            file: times for file, times in tracking.items()
            if times.get("observed_mod_time", 0.0) > times.get("updated_mod_time", 0.0)
        }

    def is_annotations_file(self, file: str) -> bool:
        return Path(file).as_posix() == Path(self.settings.annotations_file).as_posix()

    def is_source_file(self, file: str) -> bool:
        source_dir = Path(self.settings.source_dir).as_posix().rstrip("/") + "/"
        return Path(file).as_posix().startswith(source_dir)

    def ingest(self, segments: List[Segment], file: str) -> List[str]:
        """
        Fold one changed file into the collection.

        Returns:
            References whose segment was changed, or whose comments changed
        """
        absolute = str(self.project_dir / file)
        if self.is_annotations_file(file):
            return self._ingest_annotations(absolute)

        is_source = self.is_source_file(file)
        by_reference = {s.get_path(self.settings.reference_key): s for s in segments}
        touched = []
        for ref, text in self.reader(absolute).items():
            if text == "":
                # empty texts are usually transient edits
                continue
            segment = by_reference.get(ref)
            if segment is None:
                segment = Segment()
                segment.set_path(self.settings.reference_key, ref)
                segments.append(segment)
                by_reference[ref] = segment
            if self._update_segment(segment, text, is_source) and ref not in touched:
                touched.append(ref)
        return touched

    def _update_segment(self, segment: Segment, text: str, is_source: bool) -> bool:
        settings = self.settings
        if is_source:
            if segment.get_path(settings.source_key, "") == text:
                return False
            segment.set_path(settings.source_key, text)
            reset_segment_to(segment, settings, oldest_translation(segment, settings))
            return True

        # compare with the first draft so AI corrections aren't mistaken for human edits
        if oldest_translation(segment, settings) == text:
            return False
        reset_segment_to(segment, settings, text)
        return True

    def _ingest_annotations(self, path: str) -> List[str]:
        comments_path = self.settings.resolve_path(self.settings.collected_comments_file)
        threads = parse_threads(load_json(path, default=[]))
        ledger, touched = merge_annotations(threads, load_comments(comments_path))
        if touched:
            save_comments(comments_path, ledger)
        return touched

    def apply_update_policy(self, segments: List[Segment], touched: List[str]) -> None:
        """Reset, or mark as comment-invalidated, every segment a change touched."""
        touched_set = set(touched)
        for segment in segments:
            ref = segment.get_path(self.settings.reference_key)
            if ref not in touched_set:
                continue
            if self.settings.reset_reflection_loops_on_update:
                LOG.info("Resetting reflection loops for %s", ref)
                reset_segment_to(segment, self.settings, oldest_translation(segment, self.settings))
            else:
                mark_comment_change(segment)

    def refresh(self) -> List[str]:
        """
        Ingest every stale file into the checkpoint.

        A file that fails to ingest is logged and stays stale so the next run
        retries it.

        Returns:
            The files that were ingested
        """
        tracking = self.observe()
        stale = self.get_files_to_update(tracking)
        if not stale:
            LOG.info("No changed files to ingest")
            return []

        checkpoint_path = self.settings.resolve_path(self.settings.reflection_output)
        if os.path.exists(checkpoint_path):
            segments = load_segments(checkpoint_path)
        else:
            segments = load_segments(self.settings.resolve_path(self.settings.reflection_input),
                                     missing_ok=True)

        ingested = []
        touched: List[str] = []
        for file in stale:
            try:
                new_touched = self.ingest(segments, file)
            except (OSError, ValueError) as e:
                LOG.error("Error ingesting %s: %s", file, e)
                continue
            LOG.info("Ingested %s (%d references touched)", file, len(new_touched))
            touched.extend(ref for ref in new_touched if ref not in touched)
            ingested.append(file)

        self.apply_update_policy(segments, touched)

        if ingested:
            save_segments(checkpoint_path, segments, self.settings)
            for file in ingested:
                tracking[file]["updated_mod_time"] = tracking[file]["observed_mod_time"]
            save_json(self.mod_times_path, tracking)
        return ingested
