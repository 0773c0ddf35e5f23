"""Process-lifetime request and token counters."""

import math
import threading
import time
from collections import Counter
from typing import Any, Dict

INPUT_CHARS_PER_TOKEN = 1.5
OUTPUT_CHARS_PER_TOKEN = 2.0


def estimate_input_tokens(prompt: str) -> int:
    return int(math.ceil(len(prompt) / INPUT_CHARS_PER_TOKEN))


def estimate_output_tokens(chars: int) -> int:
    return int(math.ceil(chars / OUTPUT_CHARS_PER_TOKEN))


class GatewayMetrics:
    """Counters owned by the dispatcher and read by ``/health`` and ``/admin/stats``."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at = time.time()
        self.request_count = 0
        self.failed_count = 0
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.provider_requests: Counter = Counter()
        self.provider_failures: Counter = Counter()

    def record_request(self, provider_id: str, prompt: str = "") -> int:
        tokens = estimate_input_tokens(prompt)
        with self._lock:
            self.request_count += 1
            self.total_input_tokens += tokens
            self.provider_requests[provider_id] += 1
        return tokens

    def record_output(self, chars: int) -> int:
        tokens = estimate_output_tokens(chars)
        with self._lock:
            self.total_output_tokens += tokens
        return tokens

    def record_failure(self, provider_id: str) -> None:
        with self._lock:
            self.failed_count += 1
            self.provider_failures[provider_id] += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "requestCount": self.request_count,
                "failedCount": self.failed_count,
                "totalInputTokens": self.total_input_tokens,
                "totalOutputTokens": self.total_output_tokens,
                "providers": dict(self.provider_requests),
                "providerFailures": dict(self.provider_failures),
                "uptimeSeconds": int(time.time() - self.started_at),
            }
