from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Iterator, Sequence, Union

from bitget_history.core.models import CandidateResource, DataKind
from bitget_history.exchanges.bitget_archive import BASE_URL, iter_local_archives, local_path


class ResumeMarker(ABC):
    """Answers "is this resource already mirrored?" for the enumerator and the engine."""

    @abstractmethod
    def is_present(self, resource: CandidateResource) -> bool:
        pass

    @abstractmethod
    def is_complete(self, resource: CandidateResource) -> bool:
        pass

    @abstractmethod
    def path_for(self, resource: CandidateResource) -> Path:
        pass

    @abstractmethod
    def iter_local(self, kind: DataKind, pair: str, codes: Sequence[str], start: date, end: date,
                   base_url: str = BASE_URL) -> Iterator[CandidateResource]:
        pass


class LocalFileResumeMarker(ResumeMarker):
    """
    File-presence resume marker over the local archive mirror.

    A trades archive is present only when non-empty. A zero-byte depth file
    is a placeholder for a day the origin reported absent and counts as
    present. Completeness additionally compares the size hint (0 means
    unknown, so any present file is complete).
    """

    def __init__(self, archive_dir: Union[str, Path]) -> None:
        self.archive_dir = Path(archive_dir)

    def path_for(self, resource: CandidateResource) -> Path:
        return local_path(self.archive_dir, resource)

    def is_present(self, resource: CandidateResource) -> bool:
        path = self.path_for(resource)
        try:
            size = path.stat().st_size
        except OSError:
            return False
        return size > 0 or resource.kind == DataKind.DEPTH

    def is_complete(self, resource: CandidateResource) -> bool:
        if not self.is_present(resource):
            return False
        if resource.size_hint <= 0:
            return True
        return self.path_for(resource).stat().st_size == resource.size_hint

    def iter_local(self, kind: DataKind, pair: str, codes: Sequence[str], start: date, end: date,
                   base_url: str = BASE_URL) -> Iterator[CandidateResource]:
        """Mirrored archives with content; depth placeholders are left out."""
        for resource in iter_local_archives(self.archive_dir, kind, pair, list(codes),
                                            start=start, end=end, base_url=base_url):
            if self.path_for(resource).stat().st_size > 0:
                yield resource
