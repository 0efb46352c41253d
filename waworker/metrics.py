from __future__ import annotations

from prometheus_client import Counter


WA_CONNECT_REQUEST_TOTAL = Counter(
    "wa_connect_request_total", "Total number of session connect requests accepted"
)
WA_LOGOUT_REQUEST_TOTAL = Counter(
    "wa_logout_request_total", "Total number of session logout requests handled"
)
WA_QR_SERVED_TOTAL = Counter(
    "wa_qr_served_total", "Total number of QR payloads returned to callers"
)
WA_SEND_TOTAL = Counter(
    "wa_send_total",
    "Total number of outgoing message requests grouped by outcome",
    ["outcome"],
)
WA_REQUEST_REJECTED_TOTAL = Counter(
    "wa_request_rejected_total",
    "Total number of requests rejected at the HTTP boundary",
    ["reason"],
)

__all__ = [
    "WA_CONNECT_REQUEST_TOTAL",
    "WA_LOGOUT_REQUEST_TOTAL",
    "WA_QR_SERVED_TOTAL",
    "WA_SEND_TOTAL",
    "WA_REQUEST_REJECTED_TOTAL",
]
