"""Rate-limit parsing, backoff and the retrying executor."""
