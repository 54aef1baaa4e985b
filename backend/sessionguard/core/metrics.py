from prometheus_client import Counter

AUTH_FAILURES = Counter(
    "sessionguard_auth_failures_total",
    "Rejected protected requests by reason",
    ["reason"],
)
CSRF_REJECTIONS = Counter(
    "sessionguard_csrf_rejections_total",
    "State-changing requests rejected by the CSRF guard",
    ["error"],
)
RATE_LIMIT_REJECTIONS = Counter(
    "sessionguard_rate_limit_rejections_total",
    "Requests rejected with 429 by limiter tier",
    ["tier"],
)
SESSION_ROTATIONS = Counter(
    "sessionguard_session_rotations_total",
    "Refresh-token rotations by outcome",
    ["outcome"],
)
