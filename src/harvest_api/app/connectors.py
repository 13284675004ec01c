from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib import error, parse, request

from .config import FACEBOOK_SEARCH_TARGETS, Settings
from .models import CollectionConfig, JobDraft
from .storage import RecordStore

logger = logging.getLogger(__name__)

JOB_POST_KEYWORDS = (
    "مطلوب",
    "وظيفة",
    "عمل",
    "توظيف",
    "فرصة عمل",
    "متاح",
    "خبرة",
    "راتب",
    "دوام",
    "شركة",
    "job",
    "hiring",
    "opportunity",
    "position",
    "vacancy",
    "required",
    "needed",
    "salary",
    "company",
    "employment",
)

TITLE_PATTERNS = (
    r"مطلوب\s+([^.\n،]+)",
    r"وظيفة\s+([^.\n،]+)",
    r"فرصة عمل\s+([^.\n،]+)",
    r"hiring\s+([^.\n,]+)",
    r"position:\s*([^.\n,]+)",
    r"job:\s*([^.\n,]+)",
)

COMPANY_PATTERNS = (
    r"شركة\s+([^.\n،]+)",
    r"مؤسسة\s+([^.\n،]+)",
    r"company:\s*([^.\n,]+)",
    r"\bat\s+([A-Z][A-Za-z&\s]+)",
)

KNOWN_LOCATIONS = (
    "riyadh",
    "jeddah",
    "dammam",
    "cairo",
    "alexandria",
    "giza",
    "الرياض",
    "جدة",
    "الدمام",
    "القاهرة",
    "الإسكندرية",
)

SKILL_KEYWORDS = (
    "react",
    "node.js",
    "javascript",
    "python",
    "php",
    "java",
    "sales",
    "marketing",
    "accounting",
    "driver",
    "engineer",
    "محاسبة",
    "مبيعات",
    "تسويق",
    "مهندس",
    "سائق",
)


class SourceConnector(Protocol):
    """Fetches candidate job postings from one source."""

    name: str

    def fetch_jobs(self, source_url: str | None, config: CollectionConfig) -> list[JobDraft]: ...


def is_job_post(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in JOB_POST_KEYWORDS)


def extract_job_title(text: str) -> str | None:
    for pattern in TITLE_PATTERNS:
        match = re.search(pattern, text, flags=re.IGNORECASE)
        if match and match.group(1).strip():
            return match.group(1).strip()[:100]
    first_line = text.split("\n", 1)[0].strip()
    if 10 < len(first_line) < 100:
        return first_line
    return None


def extract_company(text: str) -> str | None:
    for pattern in COMPANY_PATTERNS:
        match = re.search(pattern, text)
        if match and match.group(1).strip():
            return match.group(1).strip()[:80]
    return None


def extract_location(text: str) -> str | None:
    lowered = text.lower()
    for location in KNOWN_LOCATIONS:
        if location in lowered:
            return location.title() if location.isascii() else location
    return None


def extract_keywords(text: str) -> list[str]:
    lowered = text.lower()
    return [keyword for keyword in SKILL_KEYWORDS if keyword in lowered]


def matches_keywords(job: JobDraft, keywords: list[str]) -> bool:
    """Case-insensitive match against title, description and job keywords."""
    if not keywords:
        return True
    haystacks = [job.title.lower(), job.description.lower(), *(k.lower() for k in job.keywords)]
    return any(keyword.lower() in haystack for keyword in keywords for haystack in haystacks)


class FacebookGraphConnector:
    """Reads posts from configured groups/pages through the Graph API."""

    name = "facebook"

    def __init__(
        self,
        *,
        store: RecordStore,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.settings = settings
        self.base_url = settings.facebook_graph_url.rstrip("/")
        self._sleep = sleep

    def fetch_jobs(self, source_url: str | None, config: CollectionConfig) -> list[JobDraft]:
        if not (self.settings.facebook_app_id and self.settings.facebook_app_secret):
            raise RuntimeError("Facebook API credentials not configured")

        targets = self._search_targets()
        if not targets:
            logger.info("facebook_collect event=skip reason=no_targets")
            return []

        max_items = config.max_items or 20
        per_target = max(1, -(-max_items // len(targets)))
        access_token = self._access_token()
        jobs: list[JobDraft] = []
        for index, target in enumerate(targets):
            if index > 0:
                # Graph API rate limit between targets.
                self._sleep(self.settings.facebook_request_delay_s)
            try:
                posts = self._fetch_posts(target, access_token=access_token, limit=per_target)
            except (TimeoutError, ValueError, error.URLError) as exc:
                logger.warning("facebook_collect event=target_failed target=%s reason=%s", target, exc)
                continue
            for post in posts:
                draft = self._post_to_job(post, target)
                if draft is not None:
                    jobs.append(draft)
                if len(jobs) >= max_items:
                    break
            if len(jobs) >= max_items:
                break
        logger.info("facebook_collect event=done targets=%d found=%d", len(targets), len(jobs))
        return jobs

    def check_connection(self) -> dict[str, Any]:
        """Verify the app credentials with one token request and one app lookup.

        Returns `success` and `message`, plus `appInfo` when the Graph API answered.
        """
        app_id = self.settings.facebook_app_id
        if not (app_id and self.settings.facebook_app_secret):
            return {
                "success": False,
                "message": (
                    "Facebook API credentials not configured. Set HARVEST_FACEBOOK_APP_ID "
                    "and HARVEST_FACEBOOK_APP_SECRET."
                ),
            }
        try:
            access_token = self._access_token()
        except (TimeoutError, ValueError, RuntimeError, error.URLError) as exc:
            logger.warning("facebook_check event=token_failed reason=%s", exc)
            return {"success": False, "message": f"Failed to get Facebook access token: {exc}"}

        query = parse.urlencode({"access_token": access_token, "fields": "name,category"})
        version = self.settings.facebook_api_version
        try:
            app_info = self._get_json(f"{self.base_url}/{version}/{parse.quote(app_id)}?{query}")
        except (TimeoutError, ValueError, error.URLError) as exc:
            logger.warning("facebook_check event=app_lookup_failed reason=%s", exc)
            return {"success": False, "message": f"Facebook API test call failed: {exc}"}
        logger.info("facebook_check event=ok app_id=%s", app_id)
        return {"success": True, "message": "Facebook API connection successful", "appInfo": app_info}

    def _search_targets(self) -> list[str]:
        setting = self.store.get_setting(FACEBOOK_SEARCH_TARGETS)
        if setting is None or not setting.value:
            logger.warning("facebook_collect event=targets_missing key=%s", FACEBOOK_SEARCH_TARGETS)
            return []
        try:
            parsed = json.loads(setting.value)
        except json.JSONDecodeError:
            logger.warning("facebook_collect event=targets_invalid key=%s", FACEBOOK_SEARCH_TARGETS)
            return []
        if not isinstance(parsed, list):
            logger.warning("facebook_collect event=targets_invalid key=%s", FACEBOOK_SEARCH_TARGETS)
            return []
        return [str(item) for item in parsed if str(item).strip()]

    def _access_token(self) -> str:
        query = parse.urlencode(
            {
                "client_id": self.settings.facebook_app_id,
                "client_secret": self.settings.facebook_app_secret,
                "grant_type": "client_credentials",
            }
        )
        payload = self._get_json(f"{self.base_url}/oauth/access_token?{query}")
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise RuntimeError("Graph API response has no access_token")
        return token

    def _fetch_posts(self, target: str, *, access_token: str, limit: int) -> list[dict[str, Any]]:
        query = parse.urlencode(
            {
                "access_token": access_token,
                "limit": limit,
                "fields": "message,created_time,id,from",
            }
        )
        version = self.settings.facebook_api_version
        payload = self._get_json(f"{self.base_url}/{version}/{parse.quote(target)}/posts?{query}")
        data = payload.get("data")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def _get_json(self, url: str) -> dict[str, Any]:
        req = request.Request(url=url, method="GET", headers={"Accept": "application/json"})
        with request.urlopen(req, timeout=self.settings.http_timeout_s) as response:
            body = response.read().decode("utf-8")
        parsed = json.loads(body)
        if not isinstance(parsed, dict):
            raise ValueError("Graph API returned a non-object payload")
        return parsed

    @staticmethod
    def _post_to_job(post: dict[str, Any], target: str) -> JobDraft | None:
        message = str(post.get("message") or "")
        if not is_job_post(message):
            return None
        title = extract_job_title(message)
        if not title:
            return None
        post_id = str(post.get("id") or "")
        posted_at: datetime | None = None
        created_time = post.get("created_time")
        if isinstance(created_time, str):
            try:
                # Graph API uses "+0000" offsets.
                posted_at = datetime.strptime(created_time, "%Y-%m-%dT%H:%M:%S%z")
            except ValueError:
                posted_at = None
        author = post.get("from") if isinstance(post.get("from"), dict) else {}
        return JobDraft(
            title=title,
            description=message if len(message) <= 500 else message[:500] + "...",
            company=extract_company(message),
            location=extract_location(message),
            source="facebook",
            source_url=f"https://facebook.com/{post_id}",
            source_id=f"facebook_{post_id}",
            keywords=extract_keywords(message),
            posted_at=posted_at,
            metadata={"sourceName": target, "postId": post_id, "fromName": author.get("name")},
        )


class SampleListingConnector:
    """Connector that serves a fixed set of listings.

    LinkedIn and Indeed do not offer an open listings API, so these sources are
    served from curated sample postings until a partner feed is wired in.
    """

    def __init__(self, name: str, listings: list[dict[str, Any]]) -> None:
        self.name = name
        self._listings = listings

    def fetch_jobs(self, source_url: str | None, config: CollectionConfig) -> list[JobDraft]:
        logger.info("sample_collect event=start source=%s source_url=%s", self.name, source_url)
        now = datetime.now(tz=UTC)
        jobs: list[JobDraft] = []
        for index, listing in enumerate(self._listings):
            jobs.append(
                JobDraft(
                    source=self.name,
                    source_url=source_url or listing["url"],
                    source_id=f"{self.name}_{listing['id']}",
                    posted_at=now - timedelta(days=index + 1),
                    title=listing["title"],
                    description=listing["description"],
                    company=listing.get("company"),
                    location=listing.get("location"),
                    keywords=list(listing.get("keywords", [])),
                    metadata=dict(listing.get("metadata", {})),
                )
            )
        return jobs


LINKEDIN_SAMPLE_LISTINGS: list[dict[str, Any]] = [
    {
        "id": "job_12345678",
        "url": "https://linkedin.com/jobs/view/12345678",
        "title": "Senior Software Engineer",
        "description": (
            "We are looking for a Senior Software Engineer to join our team "
            "and work on cutting-edge projects."
        ),
        "company": "Tech Solutions KSA",
        "location": "Riyadh, Saudi Arabia",
        "keywords": ["software engineer", "senior", "programming"],
        "metadata": {"salary": "15000-20000 SAR", "jobType": "Full-time", "experience": "5+ years"},
    },
]

INDEED_SAMPLE_LISTINGS: list[dict[str, Any]] = [
    {
        "id": "job_abcd1234",
        "url": "https://indeed.com/viewjob?jk=abcd1234",
        "title": "Customer Service Representative",
        "description": (
            "Join our customer service team and help provide excellent support to our clients."
        ),
        "company": "Customer Care Co.",
        "location": "Dammam, Saudi Arabia",
        "keywords": ["customer service", "support", "representative"],
        "metadata": {"salary": "5000-7000 SAR", "jobType": "Full-time", "urgency": "Urgent"},
    },
]


def build_connector_registry(
    *, store: RecordStore, settings: Settings
) -> dict[str, SourceConnector]:
    return {
        "facebook": FacebookGraphConnector(store=store, settings=settings),
        "linkedin": SampleListingConnector("linkedin", LINKEDIN_SAMPLE_LISTINGS),
        "indeed": SampleListingConnector("indeed", INDEED_SAMPLE_LISTINGS),
    }
