"""
Document store backends for contestants (the tally) and vote transactions (the ledger).

Both backends expose the same async interface:
- create-with-uniqueness on the ledger reference
- atomic add-N on a contestant's vote_count
- conditional pending -> completed/failed transitions
- complete_and_credit: the pending -> completed transition and the tally
  increment applied as one unit
- contestant delete refused while any ledger entry references the contestant

RedisVoteStore runs every multi-key mutation as a Lua script, so Redis
executes it atomically. MemoryVoteStore serializes operations behind one
asyncio.Lock and is meant for local development and tests.
"""
import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

import redis.asyncio as redis

from services.shared.errors import (
    ContestantInUse,
    ContestantNotFound,
    DuplicateCompletion,
    LedgerEntryMissing,
    PaymentAfterCancellation,
    ReferenceCollision,
    StoreUnavailable,
)
from services.shared.models import (
    Contestant,
    TransactionStatus,
    VoteTransaction,
    get_current_timestamp,
    get_redis_key,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


INSERT_TRANSACTION_SCRIPT = """
-- KEYS[1] entry hash, KEYS[2] pending zset, KEYS[3] contestant reference set
-- ARGV[1] reference, ARGV[2] created epoch, ARGV[3..] field/value pairs
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV, 3))
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
redis.call('SADD', KEYS[3], ARGV[1])
return 1
"""

COMPLETE_AND_CREDIT_SCRIPT = """
-- KEYS[1] entry hash, KEYS[2] pending zset, KEYS[3] contestant hash
-- ARGV[1] reference, ARGV[2] provider reference, ARGV[3] settled_at
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
    return {'missing', -1}
end
if status ~= 'pending' then
    return {status, -1}
end
if redis.call('EXISTS', KEYS[3]) == 0 then
    return {'no_contestant', -1}
end
local votes = tonumber(redis.call('HGET', KEYS[1], 'vote_count'))
redis.call('HSET', KEYS[1], 'status', 'completed', 'provider_reference', ARGV[2], 'settled_at', ARGV[3])
redis.call('ZREM', KEYS[2], ARGV[1])
local tally = redis.call('HINCRBY', KEYS[3], 'vote_count', votes)
return {'ok', tally}
"""

FAIL_TRANSACTION_SCRIPT = """
-- KEYS[1] entry hash, KEYS[2] pending zset
-- ARGV[1] reference, ARGV[2] settled_at
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
    return 'missing'
end
if status ~= 'pending' then
    return status
end
redis.call('HSET', KEYS[1], 'status', 'failed', 'settled_at', ARGV[2])
redis.call('ZREM', KEYS[2], ARGV[1])
return 'ok'
"""

INCREMENT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return false
end
return redis.call('HINCRBY', KEYS[1], 'vote_count', ARGV[1])
"""

UPDATE_IF_EXISTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

DELETE_IF_UNUSED_SCRIPT = """
-- KEYS[1] contestant hash, KEYS[2] contestant id list, KEYS[3] contestant reference set
-- ARGV[1] contestant id
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 'missing'
end
if redis.call('SCARD', KEYS[3]) > 0 then
    return 'in_use'
end
redis.call('DEL', KEYS[1])
redis.call('LREM', KEYS[2], 0, ARGV[1])
return 'ok'
"""

SEED_IF_EMPTY_SCRIPT = """
-- KEYS[1] contestant id list
-- ARGV[1] contestant key prefix, ARGV[2] JSON array of flat string maps
if redis.call('LLEN', KEYS[1]) > 0 then
    return 0
end
local items = cjson.decode(ARGV[2])
for _, item in ipairs(items) do
    local key = ARGV[1] .. item['id']
    for name, value in pairs(item) do
        redis.call('HSET', key, name, value)
    end
    redis.call('RPUSH', KEYS[1], item['id'])
end
return #items
"""


def raise_for_settled(reference: str, status: Optional[str]) -> None:
    """Translate the status of a ledger entry that is not pending into its error."""
    if status is None or status == "missing":
        raise LedgerEntryMissing(reference)
    if status == TransactionStatus.COMPLETED:
        raise DuplicateCompletion(reference)
    if status == TransactionStatus.FAILED:
        raise PaymentAfterCancellation(reference)


def contestant_to_hash(contestant: Contestant) -> Dict[str, str]:
    return {
        "id": contestant.id,
        "name": contestant.name,
        "bio": contestant.bio or "",
        "category": contestant.category or "",
        "location": contestant.location or "",
        "age": "" if contestant.age is None else str(contestant.age),
        "image_url": contestant.image_url or "",
        "vote_count": str(contestant.vote_count),
        "evicted": "1" if contestant.evicted else "0",
        "created_at": contestant.created_at,
        "updated_at": contestant.updated_at,
    }


def contestant_from_hash(data: Dict[str, str]) -> Contestant:
    return Contestant(
        id=data["id"],
        name=data.get("name", ""),
        bio=data.get("bio", ""),
        category=data.get("category", ""),
        location=data.get("location", ""),
        age=int(data["age"]) if data.get("age") else None,
        image_url=data.get("image_url", ""),
        vote_count=int(data.get("vote_count") or 0),
        evicted=data.get("evicted") == "1",
        created_at=data.get("created_at", ""),
        updated_at=data.get("updated_at", ""),
    )


def transaction_to_hash(tx: VoteTransaction) -> Dict[str, str]:
    return {
        "reference": tx.reference,
        "contestant_id": tx.contestant_id,
        "contestant_name": tx.contestant_name,
        "vote_count": str(tx.vote_count),
        "amount": str(tx.amount),
        "email": tx.email,
        "status": str(TransactionStatus(tx.status).value),
        "provider_reference": tx.provider_reference or "",
        "created_at": tx.created_at,
        "settled_at": tx.settled_at or "",
    }


def transaction_from_hash(data: Dict[str, str]) -> VoteTransaction:
    return VoteTransaction(
        reference=data["reference"],
        contestant_id=data["contestant_id"],
        contestant_name=data.get("contestant_name", ""),
        vote_count=int(data["vote_count"]),
        amount=int(data["amount"]),
        email=data.get("email", ""),
        status=data["status"],
        provider_reference=data.get("provider_reference") or None,
        created_at=data["created_at"],
        settled_at=data.get("settled_at") or None,
    )


def contestant_update_fields(fields: Dict[str, object]) -> Dict[str, str]:
    """Flatten a partial contestant update into hash fields."""
    scratch = Contestant(id="", name="")
    flat = {}
    for name, value in fields.items():
        if name in ("id", "vote_count", "created_at"):
            raise ValueError(f"Field '{name}' cannot be updated")
        if not hasattr(scratch, name):
            raise ValueError(f"Unknown contestant field '{name}'")
        setattr(scratch, name, value)
        flat[name] = contestant_to_hash(scratch)[name]
    flat["updated_at"] = get_current_timestamp()
    return flat


class RedisVoteStore:
    """Redis-backed document store."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.client: Optional[redis.Redis] = None

    async def initialize(self):
        """Connect to Redis and register the Lua scripts."""
        try:
            self.client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self.client.ping()
            logger.info("Redis connection established")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise StoreUnavailable(f"Redis unavailable: {e}")

        self._insert_transaction = self.client.register_script(INSERT_TRANSACTION_SCRIPT)
        self._complete_and_credit = self.client.register_script(COMPLETE_AND_CREDIT_SCRIPT)
        self._fail_transaction = self.client.register_script(FAIL_TRANSACTION_SCRIPT)
        self._increment = self.client.register_script(INCREMENT_SCRIPT)
        self._update_if_exists = self.client.register_script(UPDATE_IF_EXISTS_SCRIPT)
        self._seed_if_empty = self.client.register_script(SEED_IF_EMPTY_SCRIPT)
        self._delete_if_unused = self.client.register_script(DELETE_IF_UNUSED_SCRIPT)

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except redis.RedisError as e:
            logger.error(f"Redis error during {operation}: {e}")
            raise StoreUnavailable(f"Redis error during {operation}: {e}")

    async def check_health(self) -> bool:
        try:
            if not self.client:
                return False
            await self.client.ping()
            return True
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self):
        """Close the Redis connection pool."""
        try:
            if self.client:
                await self.client.aclose()
                logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")

    # Contestants

    async def insert_contestant(self, contestant: Contestant) -> Contestant:
        key = get_redis_key('contestant', contestant.id)
        with self._guard("insert_contestant"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=contestant_to_hash(contestant))
                pipe.rpush(get_redis_key('contestant_ids'), contestant.id)
                await pipe.execute()
        return contestant

    async def get_contestant(self, contestant_id: str) -> Optional[Contestant]:
        with self._guard("get_contestant"):
            data = await self.client.hgetall(get_redis_key('contestant', contestant_id))
        return contestant_from_hash(data) if data else None

    async def list_contestants(self) -> List[Contestant]:
        """All contestants in creation order."""
        with self._guard("list_contestants"):
            ids = await self.client.lrange(get_redis_key('contestant_ids'), 0, -1)
            async with self.client.pipeline(transaction=False) as pipe:
                for contestant_id in ids:
                    pipe.hgetall(get_redis_key('contestant', contestant_id))
                rows = await pipe.execute()
        return [contestant_from_hash(row) for row in rows if row]

    async def update_contestant(self, contestant_id: str, fields: Dict[str, object]) -> Optional[Contestant]:
        flat = contestant_update_fields(fields)
        args = [item for pair in flat.items() for item in pair]
        with self._guard("update_contestant"):
            updated = await self._update_if_exists(
                keys=[get_redis_key('contestant', contestant_id)],
                args=args
            )
        if not updated:
            return None
        return await self.get_contestant(contestant_id)

    async def delete_contestant(self, contestant_id: str) -> bool:
        """
        Delete a contestant no ledger entry refers to.

        Returns:
            bool: False if there was no such contestant

        Raises:
            ContestantInUse: If any ledger entry references the contestant
        """
        with self._guard("delete_contestant"):
            status = await self._delete_if_unused(
                keys=[
                    get_redis_key('contestant', contestant_id),
                    get_redis_key('contestant_ids'),
                    get_redis_key('contestant_transactions', contestant_id),
                ],
                args=[contestant_id]
            )
        if status == "in_use":
            raise ContestantInUse(contestant_id)
        return status == "ok"

    async def increment_vote_count(self, contestant_id: str, amount: int) -> int:
        with self._guard("increment_vote_count"):
            tally = await self._increment(
                keys=[get_redis_key('contestant', contestant_id)],
                args=[amount]
            )
        if tally is None:
            raise ContestantNotFound(contestant_id)
        return int(tally)

    async def seed_if_empty(self, contestants: List[Contestant]) -> int:
        payload = json.dumps([contestant_to_hash(c) for c in contestants])
        with self._guard("seed_if_empty"):
            inserted = await self._seed_if_empty(
                keys=[get_redis_key('contestant_ids')],
                args=[get_redis_key('contestant', ''), payload]
            )
        return int(inserted)

    # Ledger

    async def insert_transaction(self, tx: VoteTransaction) -> VoteTransaction:
        fields = transaction_to_hash(tx)
        args = [tx.reference, parse_timestamp(tx.created_at).timestamp()]
        args.extend(item for pair in fields.items() for item in pair)
        with self._guard("insert_transaction"):
            created = await self._insert_transaction(
                keys=[
                    get_redis_key('transaction', tx.reference),
                    get_redis_key('pending_transactions'),
                    get_redis_key('contestant_transactions', tx.contestant_id),
                ],
                args=args
            )
        if not created:
            raise ReferenceCollision(tx.reference)
        return tx

    async def get_transaction(self, reference: str) -> Optional[VoteTransaction]:
        with self._guard("get_transaction"):
            data = await self.client.hgetall(get_redis_key('transaction', reference))
        return transaction_from_hash(data) if data else None

    async def complete_and_credit(self, reference: str, provider_reference: str) -> int:
        """
        Mark a pending entry completed and add its votes to the contestant tally.

        Returns:
            int: The contestant's new vote count
        """
        tx = await self.get_transaction(reference)
        if tx is None:
            raise LedgerEntryMissing(reference)
        with self._guard("complete_and_credit"):
            status, tally = await self._complete_and_credit(
                keys=[
                    get_redis_key('transaction', reference),
                    get_redis_key('pending_transactions'),
                    get_redis_key('contestant', tx.contestant_id),
                ],
                args=[reference, provider_reference, get_current_timestamp()]
            )
        if status == "no_contestant":
            raise ContestantNotFound(tx.contestant_id)
        if status != "ok":
            raise_for_settled(reference, status)
        return int(tally)

    async def fail_transaction(self, reference: str) -> bool:
        """
        Mark a pending entry failed.

        Returns:
            bool: False if the entry had already failed
        """
        with self._guard("fail_transaction"):
            status = await self._fail_transaction(
                keys=[
                    get_redis_key('transaction', reference),
                    get_redis_key('pending_transactions'),
                ],
                args=[reference, get_current_timestamp()]
            )
        if status == "ok":
            return True
        if status == TransactionStatus.FAILED:
            return False
        raise_for_settled(reference, status)

    async def list_pending(self, created_before: float) -> List[VoteTransaction]:
        """Pending entries created before the given epoch, oldest first."""
        with self._guard("list_pending"):
            references = await self.client.zrangebyscore(
                get_redis_key('pending_transactions'), '-inf', created_before
            )
            async with self.client.pipeline(transaction=False) as pipe:
                for reference in references:
                    pipe.hgetall(get_redis_key('transaction', reference))
                rows = await pipe.execute()
        return [transaction_from_hash(row) for row in rows if row]

    async def list_transactions_for(self, contestant_id: str) -> List[VoteTransaction]:
        with self._guard("list_transactions_for"):
            references = await self.client.smembers(
                get_redis_key('contestant_transactions', contestant_id)
            )
            async with self.client.pipeline(transaction=False) as pipe:
                for reference in sorted(references):
                    pipe.hgetall(get_redis_key('transaction', reference))
                rows = await pipe.execute()
        return [transaction_from_hash(row) for row in rows if row]


class MemoryVoteStore:
    """In-process document store with the same guarantees as RedisVoteStore."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._contestants: Dict[str, Contestant] = {}
        self._transactions: Dict[str, VoteTransaction] = {}

    async def initialize(self):
        logger.info("Using in-memory vote store")

    async def check_health(self) -> bool:
        return True

    async def close(self):
        pass

    # Contestants

    async def insert_contestant(self, contestant: Contestant) -> Contestant:
        async with self._lock:
            self._contestants[contestant.id] = Contestant.from_dict(contestant.to_dict())
        return contestant

    async def get_contestant(self, contestant_id: str) -> Optional[Contestant]:
        contestant = self._contestants.get(contestant_id)
        return Contestant.from_dict(contestant.to_dict()) if contestant else None

    async def list_contestants(self) -> List[Contestant]:
        return [Contestant.from_dict(c.to_dict()) for c in self._contestants.values()]

    async def update_contestant(self, contestant_id: str, fields: Dict[str, object]) -> Optional[Contestant]:
        flat = contestant_update_fields(fields)
        async with self._lock:
            contestant = self._contestants.get(contestant_id)
            if contestant is None:
                return None
            data = contestant_to_hash(contestant)
            data.update(flat)
            self._contestants[contestant_id] = contestant_from_hash(data)
        return await self.get_contestant(contestant_id)

    async def delete_contestant(self, contestant_id: str) -> bool:
        async with self._lock:
            if contestant_id not in self._contestants:
                return False
            if any(tx.contestant_id == contestant_id for tx in self._transactions.values()):
                raise ContestantInUse(contestant_id)
            del self._contestants[contestant_id]
            return True

    async def increment_vote_count(self, contestant_id: str, amount: int) -> int:
        async with self._lock:
            contestant = self._contestants.get(contestant_id)
            if contestant is None:
                raise ContestantNotFound(contestant_id)
            contestant.vote_count += amount
            return contestant.vote_count

    async def seed_if_empty(self, contestants: List[Contestant]) -> int:
        async with self._lock:
            if self._contestants:
                return 0
            for contestant in contestants:
                self._contestants[contestant.id] = Contestant.from_dict(contestant.to_dict())
            return len(contestants)

    # Ledger

    async def insert_transaction(self, tx: VoteTransaction) -> VoteTransaction:
        async with self._lock:
            if tx.reference in self._transactions:
                raise ReferenceCollision(tx.reference)
            self._transactions[tx.reference] = VoteTransaction.from_dict(tx.to_dict())
        return tx

    async def get_transaction(self, reference: str) -> Optional[VoteTransaction]:
        tx = self._transactions.get(reference)
        return VoteTransaction.from_dict(tx.to_dict()) if tx else None

    async def complete_and_credit(self, reference: str, provider_reference: str) -> int:
        async with self._lock:
            tx = self._transactions.get(reference)
            if tx is None or not tx.is_pending:
                raise_for_settled(reference, tx.status if tx else None)
            contestant = self._contestants.get(tx.contestant_id)
            if contestant is None:
                raise ContestantNotFound(tx.contestant_id)
            tx.status = TransactionStatus.COMPLETED.value
            tx.provider_reference = provider_reference
            tx.settled_at = get_current_timestamp()
            contestant.vote_count += tx.vote_count
            return contestant.vote_count

    async def fail_transaction(self, reference: str) -> bool:
        async with self._lock:
            tx = self._transactions.get(reference)
            if tx is not None and tx.status == TransactionStatus.FAILED:
                return False
            if tx is None or not tx.is_pending:
                raise_for_settled(reference, tx.status if tx else None)
            tx.status = TransactionStatus.FAILED.value
            tx.settled_at = get_current_timestamp()
            return True

    async def list_pending(self, created_before: float) -> List[VoteTransaction]:
        pending = [
            tx for tx in self._transactions.values()
            if tx.is_pending and parse_timestamp(tx.created_at).timestamp() <= created_before
        ]
        pending.sort(key=lambda tx: tx.created_at)
        return [VoteTransaction.from_dict(tx.to_dict()) for tx in pending]

    async def list_transactions_for(self, contestant_id: str) -> List[VoteTransaction]:
        return [
            VoteTransaction.from_dict(tx.to_dict())
            for tx in self._transactions.values()
            if tx.contestant_id == contestant_id
        ]


def create_store(backend: str, redis_url: str):
    """Build the configured store backend (not yet initialized)."""
    if backend == "memory":
        return MemoryVoteStore()
    if backend == "redis":
        return RedisVoteStore(redis_url)
    raise ValueError(f"Unknown store backend '{backend}'")
