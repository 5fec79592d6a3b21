"""
Enumerations shared by the job store, the claim protocol and the workers.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Job lifecycle status: PENDING -> PROCESSING -> COMPLETED | FAILED."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobQueue(str, Enum):
    """
    Queue families partition work by resource profile and urgency.

    Multiple job types may share a family. Each family carries an urgency rank
    (lower is more urgent) that decides the order in which a worker serving
    several families polls them.
    """

    DEFAULT = "DEFAULT"
    HIGH = "HIGH"
    LOW = "LOW"
    BULK = "BULK"
    SCREENSHOT = "SCREENSHOT"

    @property
    def urgency(self) -> int:
        return _QUEUE_URGENCY[self]

    @classmethod
    def by_urgency(cls, queues: "list[JobQueue] | None" = None) -> "list[JobQueue]":
        """Return the given queues (default: all) ordered most urgent first."""
        return sorted(queues if queues is not None else list(cls), key=lambda q: q.urgency)


_QUEUE_URGENCY = {
    JobQueue.HIGH: 0,
    JobQueue.DEFAULT: 5,
    JobQueue.SCREENSHOT: 6,
    JobQueue.LOW: 7,
    JobQueue.BULK: 8,
}


class JobType(str, Enum):
    """Closed catalog of job types, each bound to its default queue family."""

    # DEFAULT
    RSS_FEED_REFRESH = "RSS_FEED_REFRESH"
    WEATHER_REFRESH = "WEATHER_REFRESH"
    LISTING_EXPIRATION = "LISTING_EXPIRATION"
    LISTING_REMINDER = "LISTING_REMINDER"
    PROMOTION_EXPIRATION = "PROMOTION_EXPIRATION"
    RANK_RECALCULATION = "RANK_RECALCULATION"
    INBOUND_EMAIL = "INBOUND_EMAIL"
    ACCOUNT_MERGE_CLEANUP = "ACCOUNT_MERGE_CLEANUP"
    GDPR_EXPORT = "GDPR_EXPORT"
    GDPR_DELETION = "GDPR_DELETION"
    EMAIL_DELIVERY = "EMAIL_DELIVERY"

    # HIGH
    STOCK_REFRESH = "STOCK_REFRESH"
    MESSAGE_RELAY = "MESSAGE_RELAY"

    # LOW
    SOCIAL_REFRESH = "SOCIAL_REFRESH"
    LINK_HEALTH_CHECK = "LINK_HEALTH_CHECK"
    SITEMAP_GENERATION = "SITEMAP_GENERATION"
    CLICK_ROLLUP = "CLICK_ROLLUP"
    PROFILE_METADATA_REFRESH = "PROFILE_METADATA_REFRESH"

    # BULK
    AI_TAGGING = "AI_TAGGING"
    AI_CATEGORIZATION = "AI_CATEGORIZATION"
    LISTING_IMAGE_PROCESSING = "LISTING_IMAGE_PROCESSING"
    LISTING_IMAGE_CLEANUP = "LISTING_IMAGE_CLEANUP"
    BULK_IMPORT = "BULK_IMPORT"

    # SCREENSHOT
    SCREENSHOT_CAPTURE = "SCREENSHOT_CAPTURE"

    @property
    def default_queue(self) -> JobQueue:
        return _DEFAULT_QUEUES.get(self, JobQueue.DEFAULT)

    @classmethod
    def in_queues(cls, queues: list[JobQueue]) -> list["JobType"]:
        """List the catalog job types whose default family is one of ``queues``."""
        return [job_type for job_type in cls if job_type.default_queue in queues]


_DEFAULT_QUEUES = {
    JobType.STOCK_REFRESH: JobQueue.HIGH,
    JobType.MESSAGE_RELAY: JobQueue.HIGH,
    JobType.SOCIAL_REFRESH: JobQueue.LOW,
    JobType.LINK_HEALTH_CHECK: JobQueue.LOW,
    JobType.SITEMAP_GENERATION: JobQueue.LOW,
    JobType.CLICK_ROLLUP: JobQueue.LOW,
    JobType.PROFILE_METADATA_REFRESH: JobQueue.LOW,
    JobType.AI_TAGGING: JobQueue.BULK,
    JobType.AI_CATEGORIZATION: JobQueue.BULK,
    JobType.LISTING_IMAGE_PROCESSING: JobQueue.BULK,
    JobType.LISTING_IMAGE_CLEANUP: JobQueue.BULK,
    JobType.BULK_IMPORT: JobQueue.BULK,
    JobType.SCREENSHOT_CAPTURE: JobQueue.SCREENSHOT,
}


class JobOutcome(str, Enum):
    """What a supervisor did with a claimed job."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    LEASE_LOST = "lease_lost"
