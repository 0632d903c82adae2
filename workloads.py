"""Per-kind workload logic used by the chunk executor.

A workload counts the units in a job's params, iterates items starting at
a cursor (yielding each item together with the cursor that follows it) and
processes one item. The per-item classifiers, importers and scrapers are
opaque callables registered per kind.
"""

import importlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from config import settings
from exceptions import DuplicateJob, FatalWorkloadError, UnknownJobKind
from models import JobKind, JobRecord

logger = logging.getLogger(__name__)

CONTEXT_WINDOW = 5
_NON_WORD = re.compile(r"[^\w\s-]", re.UNICODE)


@dataclass
class ItemResult:
    outcome: str = "created"  # created, skipped or failed
    detail: Optional[str] = None
    spawned: List[str] = field(default_factory=list)


@dataclass
class WordContext:
    word: str
    left_context: str
    right_context: str
    song_id: Optional[str] = None
    artist_id: Optional[str] = None


ItemProcessor = Callable[[Any], Optional[ItemResult]]


def tokenize_lyrics(lyrics: Optional[str]) -> List[str]:
    if not lyrics:
        return []
    cleaned = _NON_WORD.sub(" ", lyrics.lower()).replace("_", " ")
    return [w for w in cleaned.split() if len(w) >= 2]


class ProcessorRegistry:
    """Maps a job kind to its per-item processor.

    Processors registered in code win over ``settings.item_processors``
    import paths, which are resolved on first use.
    """

    def __init__(self, import_paths: Optional[Dict[str, str]] = None):
        self._processors: Dict[str, ItemProcessor] = {}
        self._import_paths = dict(import_paths if import_paths is not None else settings.item_processors)

    def register(self, kind: str, processor: ItemProcessor):
        self._processors[kind] = processor

    def resolve(self, kind: str) -> ItemProcessor:
        if kind in self._processors:
            return self._processors[kind]
        path = self._import_paths.get(kind)
        if not path:
            raise FatalWorkloadError(f"No item processor registered for kind '{kind}'")
        module_name, _, attr = path.partition(":")
        try:
            processor = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as e:
            raise FatalWorkloadError(f"Cannot load item processor '{path}': {e}")
        self._processors[kind] = processor
        return processor


class Workload(ABC):
    kind: str

    def __init__(self, processors: ProcessorRegistry):
        self.processors = processors

    def validate(self, params: Dict[str, Any]):
        """Raise ValueError for params this workload cannot run"""

    @abstractmethod
    def count_units(self, params: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    def initial_cursor(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    def iter_items(self, job: JobRecord, cursor: Dict[str, Any]) -> Iterator[Tuple[Any, Dict[str, Any]]]:
        ...

    def process_item(self, job: JobRecord, item: Any, store) -> ItemResult:
        result = self.processors.resolve(self.kind)(item)
        return result if isinstance(result, ItemResult) else ItemResult()


class SequenceWorkload(Workload):
    """Flat list of opaque items under one params key, cursor ``{"offset": n}``"""

    items_key: str

    def items(self, params: Dict[str, Any]) -> List[Any]:
        return list(params.get(self.items_key) or [])

    def validate(self, params):
        if not isinstance(params.get(self.items_key, []), list):
            raise ValueError(f"'{self.items_key}' must be a list")

    def count_units(self, params):
        return len(self.items(params))

    def initial_cursor(self):
        return {"offset": 0}

    def iter_items(self, job, cursor):
        items = self.items(job.params or {})
        for offset in range(int(cursor.get("offset", 0)), len(items)):
            yield items[offset], {"offset": offset + 1}


class DictionaryImportWorkload(SequenceWorkload):
    kind = JobKind.DICTIONARY_IMPORT.value
    items_key = "entries"

    def items(self, params):
        if params.get("entries") is not None:
            return list(params["entries"])
        source = params.get("source_text") or ""
        return [line.strip() for line in source.splitlines() if line.strip()]

    def validate(self, params):
        if params.get("entries") is None and not params.get("source_text"):
            raise ValueError("dictionary-import needs 'entries' or 'source_text'")
        super().validate(params)

    def process_item(self, job, item, store):
        entry = {"dictionary": (job.params or {}).get("dictionary"), "entry": item}
        result = self.processors.resolve(self.kind)(entry)
        return result if isinstance(result, ItemResult) else ItemResult()


class LexiconSeedWorkload(SequenceWorkload):
    kind = JobKind.LEXICON_SEED.value
    items_key = "words"


class ScrapeWorkload(SequenceWorkload):
    kind = JobKind.SCRAPE.value
    items_key = "urls"


class ArtistAnnotationWorkload(Workload):
    """Annotates every token of an artist's lyrics.

    Compound cursor ``{"song_index", "word_index"}``; each item carries a
    five-token context window on both sides.
    """

    kind = JobKind.ARTIST_ANNOTATION.value

    def validate(self, params):
        if not isinstance(params.get("songs", []), list):
            raise ValueError("'songs' must be a list")

    def count_units(self, params):
        return sum(len(tokenize_lyrics(song.get("lyrics"))) for song in params.get("songs") or [])

    def initial_cursor(self):
        return {"song_index": 0, "word_index": 0}

    def iter_items(self, job, cursor):
        params = job.params or {}
        songs = params.get("songs") or []
        start_song = int(cursor.get("song_index", 0))
        start_word = int(cursor.get("word_index", 0))
        for s in range(start_song, len(songs)):
            words = tokenize_lyrics(songs[s].get("lyrics"))
            for w in range(start_word if s == start_song else 0, len(words)):
                item = WordContext(
                    word=words[w],
                    left_context=" ".join(words[max(0, w - CONTEXT_WINDOW):w]),
                    right_context=" ".join(words[w + 1:w + 1 + CONTEXT_WINDOW]),
                    song_id=songs[s].get("id"),
                    artist_id=params.get("artist_id"),
                )
                if w + 1 < len(words):
                    next_cursor = {"song_index": s, "word_index": w + 1}
                else:
                    next_cursor = {"song_index": s + 1, "word_index": 0}
                yield item, next_cursor


class CorpusAnnotationWorkload(Workload):
    """Fans a corpus out into one artist-annotation child job per artist"""

    kind = JobKind.CORPUS_ANNOTATION.value

    def __init__(self, processors, artist_workload: ArtistAnnotationWorkload):
        super().__init__(processors)
        self.artist_workload = artist_workload

    def validate(self, params):
        artists = params.get("artists")
        if not isinstance(artists, list) or not artists:
            raise ValueError("corpus-annotation needs a non-empty 'artists' list")

    def count_units(self, params):
        return len(params.get("artists") or [])

    def initial_cursor(self):
        return {"artist_index": 0}

    def iter_items(self, job, cursor):
        artists = (job.params or {}).get("artists") or []
        for index in range(int(cursor.get("artist_index", 0)), len(artists)):
            yield artists[index], {"artist_index": index + 1}

    def process_item(self, job, item, store):
        params = {
            "artist_id": item.get("artist_id"),
            "artist_name": item.get("artist_name"),
            "corpus_id": (job.params or {}).get("corpus_id"),
            "songs": item.get("songs") or [],
        }
        total = self.artist_workload.count_units(params)
        if total == 0:
            return ItemResult(outcome="skipped", detail="no lyrics")

        dedupe_key = f"{job.id}:{item.get('artist_id')}"
        existing = store.find_child(job.id, dedupe_key)
        if existing is not None:
            # replayed chunk, the child was spawned before (it may have finished since)
            return ItemResult(outcome="skipped", detail=f"child {existing.id} exists")
        try:
            child = store.create(
                kind=self.artist_workload.kind,
                params=params,
                chunk_size=job.chunk_size,
                total_units=total,
                cursor=self.artist_workload.initial_cursor(),
                parent_id=job.id,
                dedupe_key=dedupe_key,
            )
        except DuplicateJob as e:
            # spawned concurrently by another run
            return ItemResult(outcome="skipped", detail=f"child {e.existing_job_id} exists")
        return ItemResult(outcome="created", spawned=[child.id])


def build_workloads(processors: Optional[ProcessorRegistry] = None) -> Dict[str, Workload]:
    processors = processors or ProcessorRegistry()
    artist = ArtistAnnotationWorkload(processors)
    workloads = [
        artist,
        CorpusAnnotationWorkload(processors, artist),
        DictionaryImportWorkload(processors),
        LexiconSeedWorkload(processors),
        ScrapeWorkload(processors),
    ]
    return {w.kind: w for w in workloads}


processor_registry = ProcessorRegistry()
WORKLOADS = build_workloads(processor_registry)


def get_workload(kind: str, workloads: Optional[Dict[str, Workload]] = None) -> Workload:
    workloads = WORKLOADS if workloads is None else workloads
    try:
        return workloads[kind]
    except KeyError:
        raise UnknownJobKind(f"Unknown job kind: {kind}")
