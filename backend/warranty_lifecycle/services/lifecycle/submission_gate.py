"""
Submission Completeness Gate

Decides whether a record has the documentation required for submission.
Photos are stored and counted by the upload service; this module only reads the
per-category counts it maintains on the record.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ...models.db_models import InspectionDB
from ..config.system_config import ConfigurationProvider, StaticConfigProvider, PHOTO_VALIDATION


class SubmissionCompletenessChecker(ABC):
    """Answers whether a record may be submitted."""

    @abstractmethod
    def missing_items(self, record) -> List[str]:
        """Human-readable list of what is missing. Empty when complete."""

    def is_submission_complete(self, record) -> bool:
        return not self.missing_items(record)


class PhotoCountCompletenessChecker(SubmissionCompletenessChecker):
    """
    Requires a minimum total photo count and at least one photo in each
    required category.
    """

    def __init__(self, config: Optional[ConfigurationProvider] = None):
        self.config = config or StaticConfigProvider()

    def missing_items(self, record) -> List[str]:
        counts: Dict[str, int] = record.photo_counts or {}

        if isinstance(record, InspectionDB):
            minimum = self.config.get_int(PHOTO_VALIDATION, "MIN_PHOTOS_INSPECTION")
        else:
            minimum = self.config.get_int(PHOTO_VALIDATION, "MIN_PHOTOS_WARRANTY")
        required = self.config.get(PHOTO_VALIDATION, "REQUIRED_CATEGORIES") or []

        missing = []
        for category in required:
            if int(counts.get(category, 0)) < 1:
                missing.append(f"Photo required: {category}")

        total = sum(int(v) for v in counts.values())
        if total < minimum:
            missing.append(f"At least {minimum} photos required ({total} uploaded)")

        return missing

