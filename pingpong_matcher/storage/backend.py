"""Supabase row access and change subscriptions"""
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient

from ..utils.logger import setup_logger

logger = setup_logger(__name__)

ChangeCallback = Callable[[Dict[str, Any]], None]


class RequestError(Exception):
    """A fetch or write against the backend failed"""

    def __init__(self, operation: str, table: str, message: str):
        self.operation = operation
        self.table = table
        self.message = message
        super().__init__(f"{operation} on '{table}' failed: {message}")


def eq_filter(column: str, value: Any) -> str:
    """Realtime filter expression for column == value"""
    return f"{column}=eq.{value}"


class Subscription:
    """A live change-feed registration; release it with unsubscribe()"""

    def __init__(self, client: AsyncClient, channel, topic: str):
        self._client = client
        self._channel = channel
        self.topic = topic
        self.active = True

    async def unsubscribe(self):
        """Remove the channel; safe to call more than once"""
        if not self.active:
            return
        self.active = False
        try:
            await self._client.remove_channel(self._channel)
            logger.debug(f"Unsubscribed from {self.topic}")
        except Exception as e:
            # The socket may already be gone (sign-out, network loss)
            logger.warning(f"Error unsubscribing from {self.topic}: {e}")


class Backend:
    """
    Table access for the app, on top of an injected supabase AsyncClient

    Every failed request is raised as RequestError. Nothing is retried here;
    callers decide whether to surface the error or try again.
    """

    def __init__(self, client: AsyncClient, schema: str = "public"):
        """
        Initialize backend

        Args:
            client: Connected supabase AsyncClient, owned by the composition root
            schema: Postgres schema holding the app tables
        """
        self.client = client
        self.schema = schema
        self._channel_seq = 0

    async def fetch_rows(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        any_of: Optional[Sequence[Tuple[str, Any]]] = None,
        neq: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch a snapshot of rows

        Args:
            table: Table name
            eq: Column equalities that must all hold
            any_of: (column, value) pairs of which at least one must hold
            neq: Column inequalities that must all hold
            order_by: Column to sort ascending by
            limit: Maximum number of rows

        Returns:
            List of row dicts
        """
        query = self.client.table(table).select("*")
        for column, value in (eq or {}).items():
            query = query.eq(column, value)
        for column, value in (neq or {}).items():
            query = query.neq(column, value)
        if any_of:
            if len(any_of) == 1:
                column, value = any_of[0]
                query = query.eq(column, value)
            else:
                query = query.or_(",".join(f"{column}.eq.{value}" for column, value in any_of))
        if order_by:
            query = query.order(order_by, desc=False)
        if limit is not None:
            query = query.limit(limit)

        response = await self._execute("fetch", table, query)
        rows = response.data or []
        logger.debug(f"Fetched {len(rows)} rows from {table}")
        return rows

    async def insert_row(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row and return it as persisted (id and defaults filled in)"""
        response = await self._execute("insert", table, self.client.table(table).insert(payload))
        rows = response.data or []
        if not rows:
            raise RequestError("insert", table, "no row returned")
        return rows[0]

    async def update_rows(
        self,
        table: str,
        patch: Dict[str, Any],
        eq: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """
        Update rows matching every equality in eq

        Returns:
            The updated rows; empty when nothing matched
        """
        if not eq:
            raise ValueError("update_rows requires at least one filter")
        query = self.client.table(table).update(patch)
        for column, value in eq.items():
            query = query.eq(column, value)
        response = await self._execute("update", table, query)
        return response.data or []

    async def delete_rows(self, table: str, eq: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Delete rows matching every equality in eq"""
        if not eq:
            raise ValueError("delete_rows requires at least one filter")
        query = self.client.table(table).delete()
        for column, value in eq.items():
            query = query.eq(column, value)
        response = await self._execute("delete", table, query)
        return response.data or []

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filter: Optional[str] = None,
        event: str = "*",
    ) -> Subscription:
        """
        Open a change subscription for a table

        Args:
            table: Table name
            callback: Called with each raw change payload, on the event loop
            filter: Realtime filter expression (see eq_filter)
            event: 'INSERT', 'UPDATE', 'DELETE' or '*'

        Returns:
            Subscription handle
        """
        self._channel_seq += 1
        topic = f"{table}:{filter or 'all'}:{self._channel_seq}"
        channel = self.client.channel(topic)
        try:
            channel.on_postgres_changes(
                event,
                callback=callback,
                table=table,
                schema=self.schema,
                filter=filter,
            )
            await channel.subscribe()
        except Exception as e:
            raise RequestError("subscribe", table, str(e)) from e

        logger.debug(f"Subscribed to {topic}")
        return Subscription(self.client, channel, topic)

    async def _execute(self, operation: str, table: str, query):
        try:
            return await query.execute()
        except APIError as e:
            logger.error(f"{operation} on {table} rejected: {e.message}")
            raise RequestError(operation, table, e.message or str(e)) from e
        except httpx.HTTPError as e:
            logger.error(f"{operation} on {table} failed: {e}")
            raise RequestError(operation, table, str(e)) from e
