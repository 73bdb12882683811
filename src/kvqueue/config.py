# Copyright 2025 Sushanth (https://github.com/sushanthpy)
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Store configuration."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError

# Largest value a single key may hold.
MAX_CHUNK_SIZE = 100_000

ENV_PREFIX = "KVQUEUE_"


@dataclass
class StoreConfig:
    """
    Tunables for one connection.

    Attributes:
        punch_size: Longest time (seconds) a consumer waits for work before
            re-checking the pending range, even without a wake signal.
        punch_margin: Added to the time until the next due item when
            computing the wait bound (seconds).
        gzip_size: Payloads larger than this are gzip-compressed.
        chunk_size: Encoded bodies larger than this are split into chunks.
        retry_limit: Conflicting attempts before a transaction gives up.
        retry_backoff: Initial backoff between retries (seconds).
        retry_backoff_max: Backoff ceiling (seconds).
        page_size: Default cursor page size.
    """
    punch_size: float = 60.0
    punch_margin: float = 0.001
    gzip_size: int = 860
    chunk_size: int = 90_000
    retry_limit: int = 100
    retry_backoff: float = 0.001
    retry_backoff_max: float = 1.0
    page_size: int = 100

    def with_punch_size(self, seconds: float) -> 'StoreConfig':
        """Builder pattern for the idle wait bound."""
        self.punch_size = seconds
        return self

    def with_punch_margin(self, seconds: float) -> 'StoreConfig':
        self.punch_margin = seconds
        return self

    def with_gzip_size(self, size: int) -> 'StoreConfig':
        """Builder pattern for the compression threshold."""
        self.gzip_size = size
        return self

    def with_chunk_size(self, size: int) -> 'StoreConfig':
        """Builder pattern for the chunking threshold."""
        self.chunk_size = size
        return self

    def with_retry_limit(self, limit: int) -> 'StoreConfig':
        self.retry_limit = limit
        return self

    def with_page_size(self, size: int) -> 'StoreConfig':
        self.page_size = size
        return self

    def validate(self) -> 'StoreConfig':
        """Raise ConfigError on out-of-range values."""
        if self.punch_size <= 0:
            raise ConfigError(f"punch_size must be positive, got {self.punch_size}")
        if self.punch_margin < 0:
            raise ConfigError(f"punch_margin must not be negative, got {self.punch_margin}")
        if self.gzip_size < 0:
            raise ConfigError(f"gzip_size must not be negative, got {self.gzip_size}")
        if not 0 < self.chunk_size <= MAX_CHUNK_SIZE:
            raise ConfigError(
                f"chunk_size must be in 1..{MAX_CHUNK_SIZE}, got {self.chunk_size}",
                context={"chunk_size": self.chunk_size},
            )
        if self.retry_limit < 1:
            raise ConfigError(f"retry_limit must be at least 1, got {self.retry_limit}")
        if self.retry_backoff < 0 or self.retry_backoff_max < self.retry_backoff:
            raise ConfigError("retry_backoff must be in 0..retry_backoff_max")
        if self.page_size < 1:
            raise ConfigError(f"page_size must be positive, got {self.page_size}")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'StoreConfig':
        """
        Build a config from KVQUEUE_* environment variables.

        Unset variables keep their defaults:
            KVQUEUE_PUNCH_SIZE, KVQUEUE_PUNCH_MARGIN, KVQUEUE_GZIP_SIZE,
            KVQUEUE_CHUNK_SIZE, KVQUEUE_RETRY_LIMIT, KVQUEUE_PAGE_SIZE
        """
        env = os.environ if environ is None else environ
        config = cls()

        fields = {
            "PUNCH_SIZE": ("punch_size", float),
            "PUNCH_MARGIN": ("punch_margin", float),
            "GZIP_SIZE": ("gzip_size", int),
            "CHUNK_SIZE": ("chunk_size", int),
            "RETRY_LIMIT": ("retry_limit", int),
            "PAGE_SIZE": ("page_size", int),
        }
        for suffix, (attr, cast) in fields.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is None or raw.strip() == "":
                continue
            try:
                setattr(config, attr, cast(raw))
            except ValueError:
                raise ConfigError(
                    f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r}",
                    context={"variable": ENV_PREFIX + suffix, "value": raw},
                )

        return config.validate()
