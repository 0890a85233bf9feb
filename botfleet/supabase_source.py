"""
Supabase-backed demand source.

Demand is the number of rows whose boolean flag column is true (for
example players currently online). PostgREST caps the rows returned per
request, so the count is read in fixed-size windows.
"""

from typing import Any, List

from supabase import Client as SupabaseClient, create_client

from fleet_control.config import DemandConfig
from fleet_control.demand import DemandSource, SampleUnavailable, count_paginated

from .logger import get_logger


class SupabaseDemandSource(DemandSource):
    """Counts flagged rows in a Supabase table, page by page"""

    def __init__(self, client: SupabaseClient, table: str = "players",
                 flag_column: str = "is_online", page_size: int = 1000):
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        self.client = client
        self.table = table
        self.flag_column = flag_column
        self.page_size = page_size
        self.logger = get_logger()

    @classmethod
    def from_config(cls, config: DemandConfig) -> "SupabaseDemandSource":
        """Create a source and its client from demand configuration"""
        if not config.url or not config.key:
            raise ValueError("Supabase url and key are required for the demand source")

        try:
            client = create_client(config.url, config.key)
        except Exception as e:
            raise ValueError(f"Could not create Supabase client for {config.url}: {e}") from e
        return cls(client, table=config.table, flag_column=config.flag_column, page_size=config.page_size)

    def _fetch_page(self, offset: int, limit: int) -> List[Any]:
        response = (
            self.client.table(self.table)
            .select("id")
            .eq(self.flag_column, True)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return response.data

    def count_active(self) -> int:
        try:
            total = count_paginated(self._fetch_page, self.page_size)
        except SampleUnavailable:
            raise
        except Exception as e:
            self.logger.error(f"Error counting {self.flag_column} rows in {self.table}: {e}")
            raise SampleUnavailable(f"Supabase query on {self.table} failed: {e}") from e

        self.logger.debug(f"{total} rows in {self.table} have {self.flag_column} set")
        return total
