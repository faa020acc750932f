"""
MeetingBaaS integration mock.

Two pieces:
    create_meetingbaas_mock_configs()  pre-configured ProcessMapMock rows for
                                       calendar connect, bot deploy, webhook
                                       events, recording fetch and the
                                       auth-failure / rate-limit paths
    MeetingBaaSMock                    in-memory generator of calendars, bot
                                       deployments, recordings, transcripts
                                       and webhook events for test data

The generator is seeded, so the same seed and clock give the same data.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

INTEGRATION = "meetingbaas"

BOT_STATUSES = (
    "scheduled", "joining_call", "in_waiting_room", "in_call_not_recording",
    "in_call_recording", "call_ended", "recording_done", "error",
)
WEBHOOK_EVENT_TYPES = ("bot.status_change", "bot.completed", "recording.ready", "transcript.ready")

MEETING_PLATFORMS = ("Google Meet", "Zoom", "Microsoft Teams")

SAMPLE_ATTENDEES = (
    {"name": "John Smith", "email": "john.smith@company.com"},
    {"name": "Sarah Johnson", "email": "sarah.johnson@client.com"},
    {"name": "Michael Chen", "email": "michael.chen@company.com"},
    {"name": "Emily Davis", "email": "emily.davis@prospect.com"},
    {"name": "James Wilson", "email": "james.wilson@company.com"},
)

SAMPLE_TRANSCRIPT_SEGMENTS = (
    "Thank you all for joining today's meeting. Let's start with the agenda.",
    "I wanted to discuss the timeline for the upcoming project launch.",
    "Based on our analysis, we recommend moving forward with option B.",
    "Can you walk us through the technical requirements?",
    "The key metrics we're tracking show positive momentum.",
    "Let me share my screen to show you the latest updates.",
    "I think we should schedule a follow-up to dive deeper into this.",
    "Great point. Let me add that to the action items.",
)

_STORAGE_BASE = "https://storage.meetingbaas.com/recordings"


# ═════════════════════════════════════════════════════════════════════════
# Pre-configured mocks
# ═════════════════════════════════════════════════════════════════════════


def create_meetingbaas_mock_configs(process_map_id: int, org_id: str) -> list[dict]:
    """ProcessMapMock column dicts for the MeetingBaaS integration."""
    base = {
        "process_map_id": process_map_id,
        "org_id": org_id,
        "integration": INTEGRATION,
        "is_active": True,
    }

    def webhook(event_type, response_data, delay_ms):
        return dict(base, endpoint="webhook", mock_type="success",
                    response_data=response_data, error_response=None, delay_ms=delay_ms,
                    match_conditions={"body_contains": {"event_type": event_type}},
                    priority=5)

    return [
        dict(base, endpoint="connect-calendar", mock_type="success",
             response_data={
                 "success": True,
                 "message": "Calendar connected successfully",
                 "calendar": {
                     "id": "mock_cal_001",
                     "platform": "google",
                     "raw_calendar_id": "primary",
                     "email": "test@example.com",
                 },
             },
             error_response=None, delay_ms=150, match_conditions=None, priority=10),
        dict(base, endpoint="deploy-bot", mock_type="success",
             response_data={
                 "success": True,
                 "bot_id": "mock_bot_001",
                 "message": "Bot scheduled successfully",
             },
             error_response=None, delay_ms=100, match_conditions=None, priority=10),
        webhook("bot.status_change", {"success": True, "processed": True}, 50),
        webhook("bot.completed", {"success": True, "processed": True}, 50),
        webhook("recording.ready",
                {"success": True, "processed": True, "recording_id": "mock_rec_001"}, 100),
        dict(base, endpoint="recording", mock_type="success",
             response_data={
                 "id": "mock_rec_001",
                 "bot_id": "mock_bot_001",
                 "meeting_id": "mock_meeting_001",
                 "status": "ready",
                 "duration_seconds": 2400,
                 "video_url": "https://storage.meetingbaas.com/mock/video.mp4",
                 "audio_url": "https://storage.meetingbaas.com/mock/audio.mp3",
             },
             error_response=None, delay_ms=100, match_conditions=None, priority=5),
        dict(base, endpoint=None, mock_type="auth_failure", response_data=None,
             error_response={"error": "unauthorized",
                             "error_description": "Invalid or expired token"},
             delay_ms=0, match_conditions={"body_contains": {"trigger_auth_failure": True}},
             priority=100),
        dict(base, endpoint=None, mock_type="rate_limit", response_data=None,
             error_response={"error": "rate_limited",
                             "error_description": "Too many requests. Please try again later.",
                             "retry_after": 60},
             delay_ms=0, match_conditions={"body_contains": {"trigger_rate_limit": True}},
             priority=100),
    ]


# ═════════════════════════════════════════════════════════════════════════
# Test-data generator
# ═════════════════════════════════════════════════════════════════════════


class MeetingBaaSMock:
    """Deterministic MeetingBaaS fixture store."""

    def __init__(self, seed: int = 0, now: datetime | None = None,
                 preload: bool = False, user_id: str | None = None,
                 org_id: str | None = None) -> None:
        self._rng = random.Random(seed)
        self._now = now or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        self._counter = 0
        self.calendars: dict[str, dict] = {}
        self.bot_deployments: dict[str, dict] = {}
        self.recordings: dict[str, dict] = {}
        self.transcripts: dict[str, dict] = {}
        self.webhook_events: dict[str, dict] = {}
        if preload:
            self._generate_sample_data(user_id, org_id)

    # ── helpers ───────────────────────────────────────────────────────

    def _id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter:05d}"

    def _ts(self, offset_seconds: int = 0) -> str:
        return (self._now + timedelta(seconds=offset_seconds)).isoformat()

    def _meeting_url(self, platform: str) -> str:
        if platform == "Zoom":
            return f"https://zoom.us/j/{self._rng.randint(1_000_000_000, 9_999_999_999)}"
        if platform == "Microsoft Teams":
            return f"https://teams.microsoft.com/l/meetup-join/{self._id('mtg')}"
        return f"https://meet.google.com/{self._id('mtg')}"

    # ── generators ────────────────────────────────────────────────────

    def generate_calendar(self, **overrides) -> dict:
        calendar = {
            "id": self._id("cal"),
            "user_id": overrides.get("user_id") or self._id("user"),
            "org_id": overrides.get("org_id"),
            "meetingbaas_calendar_id": self._id("mbcal"),
            "raw_calendar_id": "primary",
            "platform": "google",
            "email": self._rng.choice(SAMPLE_ATTENDEES)["email"],
            "name": "Primary Calendar",
            "is_active": True,
            "last_sync_at": self._ts(),
            "sync_error": None,
            "created_at": self._ts(),
            "updated_at": self._ts(),
        }
        calendar.update({k: v for k, v in overrides.items() if v is not None})
        self.calendars[calendar["id"]] = calendar
        return calendar

    def generate_bot_deployment(self, **overrides) -> dict:
        platform = self._rng.choice(MEETING_PLATFORMS)
        deployment = {
            "id": self._id("deploy"),
            "bot_id": self._id("bot"),
            "meeting_url": self._meeting_url(platform),
            "meeting_id": self._id("meeting"),
            "calendar_event_id": None,
            "status": "scheduled",
            "join_at": self._ts(5 * 60),
            "joined_at": None,
            "left_at": None,
            "recording_id": None,
            "error_message": None,
            "created_at": self._ts(),
            "updated_at": self._ts(),
        }
        deployment.update(overrides)
        self.bot_deployments[deployment["id"]] = deployment
        return deployment

    def generate_recording(self, **overrides) -> dict:
        recording = {
            "id": self._id("rec"),
            "bot_id": overrides.get("bot_id") or self._id("bot"),
            "meeting_id": overrides.get("meeting_id") or self._id("meeting"),
            "status": "processing",
            "duration_seconds": self._rng.randint(600, 4200),
            "file_size_bytes": self._rng.randint(10_000_000, 510_000_000),
            "video_url": None,
            "audio_url": None,
            "transcript_id": None,
            "created_at": self._ts(),
            "updated_at": self._ts(),
        }
        recording.update(overrides)
        self.recordings[recording["id"]] = recording
        return recording

    def generate_transcript(self, **overrides) -> dict:
        attendees = list(SAMPLE_ATTENDEES)
        self._rng.shuffle(attendees)
        speakers = [
            {"speaker_id": f"speaker_{i}", "name": a["name"], "is_host": i == 0}
            for i, a in enumerate(attendees[: self._rng.randint(2, 4)])
        ]
        segments = [
            f"[{self._rng.choice(speakers)['name']}]: {self._rng.choice(SAMPLE_TRANSCRIPT_SEGMENTS)}"
            for _ in range(self._rng.randint(5, 14))
        ]
        content = "\n\n".join(segments)
        transcript = {
            "id": self._id("trans"),
            "recording_id": overrides.get("recording_id") or self._id("rec"),
            "status": "ready",
            "content": content,
            "word_count": len(content.split()),
            "speaker_labels": speakers,
            "created_at": self._ts(),
            "updated_at": self._ts(),
        }
        transcript.update(overrides)
        self.transcripts[transcript["id"]] = transcript
        return transcript

    def generate_webhook_event(self, event_type: str, bot_id: str, meeting_id: str,
                               payload: dict | None = None) -> dict:
        if event_type not in WEBHOOK_EVENT_TYPES:
            raise ValueError(f"Unknown MeetingBaaS webhook event type: {event_type}")
        event = {
            "id": self._id("evt"),
            "event_type": event_type,
            "bot_id": bot_id,
            "meeting_id": meeting_id,
            "payload": payload or self._default_payload(event_type, bot_id, meeting_id),
            "processed": False,
            "received_at": self._ts(),
        }
        self.webhook_events[event["id"]] = event
        return event

    def _default_payload(self, event_type: str, bot_id: str, meeting_id: str) -> dict:
        payload = {"bot_id": bot_id, "meeting_id": meeting_id, "timestamp": self._ts()}
        if event_type == "bot.status_change":
            payload.update(status="in_call_recording", previous_status="joining_call")
        elif event_type == "bot.completed":
            payload.update(duration_seconds=self._rng.randint(600, 4200), recording_available=True)
        elif event_type == "recording.ready":
            payload.update(
                recording_id=self._id("rec"),
                video_url=f"{_STORAGE_BASE}/{self._id('vid')}.mp4",
                audio_url=f"{_STORAGE_BASE}/{self._id('aud')}.mp3",
                duration_seconds=self._rng.randint(600, 4200),
            )
        elif event_type == "transcript.ready":
            payload.update(transcript_id=self._id("trans"),
                           word_count=self._rng.randint(1000, 6000))
        return payload

    def generate_complete_test_flow(self, user_id: str, org_id: str) -> dict:
        """Calendar → bot → webhook events → recording → transcript."""
        calendar = self.generate_calendar(user_id=user_id, org_id=org_id)
        deployment = self.generate_bot_deployment(calendar_event_id=self._id("calevt"))
        bot_id, meeting_id = deployment["bot_id"], deployment["meeting_id"]

        events = []
        for status, previous in (("joining_call", "scheduled"), ("in_call_recording", "joining_call")):
            events.append(self.generate_webhook_event("bot.status_change", bot_id, meeting_id, {
                "bot_id": bot_id, "meeting_id": meeting_id, "status": status,
                "previous_status": previous, "timestamp": self._ts(),
            }))
        events.append(self.generate_webhook_event("bot.completed", bot_id, meeting_id))

        recording = self.generate_recording(
            bot_id=bot_id, meeting_id=meeting_id, status="ready",
            video_url=f"{_STORAGE_BASE}/{bot_id}.mp4",
            audio_url=f"{_STORAGE_BASE}/{bot_id}.mp3",
        )
        events.append(self.generate_webhook_event("recording.ready", bot_id, meeting_id, {
            "bot_id": bot_id, "meeting_id": meeting_id, "recording_id": recording["id"],
            "video_url": recording["video_url"], "audio_url": recording["audio_url"],
            "duration_seconds": recording["duration_seconds"], "timestamp": self._ts(),
        }))

        deployment.update(status="recording_done", recording_id=recording["id"], left_at=self._ts())

        transcript = self.generate_transcript(recording_id=recording["id"])
        recording["transcript_id"] = transcript["id"]
        events.append(self.generate_webhook_event("transcript.ready", bot_id, meeting_id, {
            "bot_id": bot_id, "meeting_id": meeting_id, "transcript_id": transcript["id"],
            "word_count": transcript["word_count"], "timestamp": self._ts(),
        }))

        return {
            "calendar": calendar,
            "deployment": deployment,
            "webhook_events": events,
            "recording": recording,
            "transcript": transcript,
        }

    def _generate_sample_data(self, user_id, org_id) -> None:
        for _ in range(2):
            self.generate_calendar(user_id=user_id, org_id=org_id)
        for _ in range(5):
            deployment = self.generate_bot_deployment(
                status=self._rng.choice(("scheduled", "in_call_recording", "recording_done")))
            if deployment["status"] != "recording_done":
                continue
            recording = self.generate_recording(bot_id=deployment["bot_id"],
                                                meeting_id=deployment["meeting_id"],
                                                status="ready")
            deployment["recording_id"] = recording["id"]
            if self._rng.random() > 0.3:
                transcript = self.generate_transcript(recording_id=recording["id"])
                recording["transcript_id"] = transcript["id"]

    # ── mocked API ────────────────────────────────────────────────────

    def mock_api_call(self, endpoint: str, method: str = "GET", body: dict | None = None) -> dict:
        """Answer a MeetingBaaS API call from the in-memory store.

        Returns {"status", "data", "headers"}.
        """
        body = body or {}
        normalized = endpoint.lower()
        headers = {"content-type": "application/json"}

        if "connect-calendar" in normalized:
            calendar = self.generate_calendar(**body)
            return {"status": 200, "headers": headers, "data": {
                "success": True,
                "message": "Calendar connected successfully",
                "calendar": {k: calendar[k] for k in ("id", "platform", "raw_calendar_id", "email")},
            }}

        if "deploy-bot" in normalized:
            deployment = self.generate_bot_deployment(**body)
            return {"status": 200, "headers": headers, "data": {
                "success": True, "bot_id": deployment["bot_id"],
                "message": "Bot scheduled successfully",
            }}

        resource_id = endpoint.rstrip("/").rsplit("/", 1)[-1]
        if "recording" in normalized:
            if resource_id in self.recordings:
                return {"status": 200, "headers": headers, "data": self.recordings[resource_id]}
            return {"status": 200, "headers": headers, "data": list(self.recordings.values())}

        if "transcript" in normalized and resource_id in self.transcripts:
            return {"status": 200, "headers": headers, "data": self.transcripts[resource_id]}

        if "webhook" in normalized:
            event_type, bot_id, meeting_id = (body.get("event_type"), body.get("bot_id"),
                                              body.get("meeting_id"))
            if event_type and bot_id and meeting_id:
                event = self.generate_webhook_event(event_type, bot_id, meeting_id,
                                                    body.get("payload"))
                return {"status": 200, "headers": headers,
                        "data": {"success": True, "event_id": event["id"]}}

        logger.debug("MeetingBaaS mock: no handler for %s %s", method, endpoint)
        return {"status": 200, "headers": headers, "data": {"success": True, "mocked": True}}

    def reset(self) -> None:
        self.calendars.clear()
        self.bot_deployments.clear()
        self.recordings.clear()
        self.transcripts.clear()
        self.webhook_events.clear()
