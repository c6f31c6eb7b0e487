"""Prometheus Metrics - session and avatar relay observability.

Exports:
- Session lifecycle counts and durations
- Degraded-mode sessions
- Avatar connect latency and failures by stage
- Lip-sync audio frames by transport, queue drops
- Expression commands by transport
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# -----------------------------------------------------------------------------
# Histograms
# -----------------------------------------------------------------------------

AVATAR_CONNECT_SECONDS = Histogram(
    "talkai_avatar_connect_seconds",
    "Time from session allocation to transport connected",
    buckets=[0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 8.0, 13.0, 21.0, 30.0],
)

SESSION_DURATION_SECONDS = Histogram(
    "talkai_session_duration_seconds",
    "Displayed session duration at end (paused time excluded)",
    buckets=[30, 60, 300, 600, 900, 1800, 2700, 3600],
)

# -----------------------------------------------------------------------------
# Counters
# -----------------------------------------------------------------------------

SESSION_STARTED = Counter(
    "talkai_sessions_started_total",
    "Total sessions that reached voice connected",
)

SESSION_ENDED = Counter(
    "talkai_sessions_ended_total",
    "Total sessions ended",
    ["reason"],  # user, shutdown, error, cleanup
)

SESSIONS_DEGRADED = Counter(
    "talkai_sessions_degraded_total",
    "Sessions that fell back to voice-only",
)

AVATAR_CONNECT_FAILURES = Counter(
    "talkai_avatar_connect_failures_total",
    "Avatar connection failures",
    ["stage"],  # create_session, negotiate, transport, aborted
)

AUDIO_FRAMES_SENT = Counter(
    "talkai_audio_frames_sent_total",
    "Lip-sync audio frames sent to the avatar service",
    ["transport"],  # data_channel, http
)

AUDIO_FRAMES_DROPPED = Counter(
    "talkai_audio_frames_dropped_total",
    "Lip-sync audio frames dropped",
    ["reason"],  # drop_oldest, drop_newest, send_error, disconnect
)

EXPRESSIONS_SENT = Counter(
    "talkai_expressions_sent_total",
    "Avatar expression commands sent",
    ["transport"],
)

ERRORS = Counter(
    "talkai_errors_total",
    "Total errors by component",
    ["component", "type"],  # voice, avatar, store
)

# -----------------------------------------------------------------------------
# Gauges
# -----------------------------------------------------------------------------

ACTIVE_SESSIONS = Gauge(
    "talkai_active_sessions",
    "Currently active sessions",
)

AUDIO_QUEUE_DEPTH = Gauge(
    "talkai_audio_queue_depth",
    "Frames waiting for the avatar connection",
    ["session_id"],
)

# -----------------------------------------------------------------------------
# Info
# -----------------------------------------------------------------------------

BUILD_INFO = Info(
    "talkai_build",
    "Build information",
)


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------


def record_session_start() -> None:
    """Record session start."""
    SESSION_STARTED.inc()
    ACTIVE_SESSIONS.inc()


def record_session_end(reason: str, duration_s: int, was_started: bool = True) -> None:
    """Record session end."""
    SESSION_ENDED.labels(reason=reason).inc()
    if was_started:
        ACTIVE_SESSIONS.dec()
        SESSION_DURATION_SECONDS.observe(duration_s)


def record_degraded() -> None:
    """Record fallback to voice-only."""
    SESSIONS_DEGRADED.inc()


def record_avatar_connected(elapsed_s: float) -> None:
    """Record avatar connect latency in seconds."""
    AVATAR_CONNECT_SECONDS.observe(elapsed_s)


def record_avatar_connect_failure(stage: str) -> None:
    """Record avatar connect failure by stage."""
    AVATAR_CONNECT_FAILURES.labels(stage=stage).inc()


def record_audio_sent(transport: str) -> None:
    """Record a lip-sync frame sent."""
    AUDIO_FRAMES_SENT.labels(transport=transport).inc()


def record_audio_dropped(reason: str, count: int = 1) -> None:
    """Record lip-sync frames dropped."""
    if count > 0:
        AUDIO_FRAMES_DROPPED.labels(reason=reason).inc(count)


def record_expression_sent(transport: str) -> None:
    """Record an expression command sent."""
    EXPRESSIONS_SENT.labels(transport=transport).inc()


def record_error(component: str, error_type: str) -> None:
    """Record error by component."""
    ERRORS.labels(component=component, type=error_type).inc()


def update_audio_queue_depth(session_id: str, depth: int) -> None:
    """Update queued frame count for a session."""
    AUDIO_QUEUE_DEPTH.labels(session_id=session_id).set(depth)


def clear_audio_queue_depth(session_id: str) -> None:
    """Remove the per-session queue gauge."""
    try:
        AUDIO_QUEUE_DEPTH.remove(session_id)
    except KeyError:
        pass


def set_build_info(version: str) -> None:
    """Set build information."""
    BUILD_INFO.info({"version": version})
