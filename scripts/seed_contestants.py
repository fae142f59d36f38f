#!/usr/bin/env python3
"""
Seed the contestant store with demonstration contestants.

Contestants are inserted only when the store holds none. The emptiness check
and the inserts run as one atomic store operation, so running this from
several places at once cannot seed twice.

Usage:
    python scripts/seed_contestants.py [--redis-host HOST] [--redis-port PORT] [--file contestants.json]

Environment Variables:
    REDIS_HOST: Redis server host (default: localhost)
    REDIS_PORT: Redis server port (default: 6379)
    REDIS_PASSWORD: Redis password (optional)
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from services.shared.errors import StoreUnavailable
from services.vote_api.database import RedisVoteStore
from services.vote_api.seed import DEFAULT_CONTESTANTS, normalize_seed_record
from services.vote_api.tally import TallyStore


def load_seed_file(path: Path) -> List[Dict]:
    """
    Read contestants from a JSON file.

    Accepts either a list of records or {"contestants": [...]}.
    """
    with open(path, 'r') as f:
        data = json.load(f)

    if isinstance(data, dict) and 'contestants' in data:
        data = data['contestants']
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of contestants in {path}")

    return [normalize_seed_record(record) for record in data]


def redis_url(host: str, port: int, db: int, password: Optional[str]) -> str:
    if password:
        return f"redis://:{password}@{host}:{port}/{db}"
    return f"redis://{host}:{port}/{db}"


async def seed(url: str, contestants: List[Dict]) -> int:
    store = RedisVoteStore(url)
    await store.initialize()
    try:
        return await TallyStore(store).seed(contestants)
    finally:
        await store.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Seed demonstration contestants into an empty store'
    )
    parser.add_argument(
        '--redis-host',
        default=os.getenv('REDIS_HOST', 'localhost'),
        help='Redis server host (default: localhost)'
    )
    parser.add_argument(
        '--redis-port',
        type=int,
        default=int(os.getenv('REDIS_PORT', 6379)),
        help='Redis server port (default: 6379)'
    )
    parser.add_argument(
        '--redis-password',
        default=os.getenv('REDIS_PASSWORD'),
        help='Redis password (optional)'
    )
    parser.add_argument(
        '--redis-db',
        type=int,
        default=int(os.getenv('REDIS_DB', 0)),
        help='Redis database number (default: 0)'
    )
    parser.add_argument(
        '--file',
        type=Path,
        help='JSON file of contestants (default: built-in demonstration set)'
    )

    args = parser.parse_args()

    try:
        contestants = load_seed_file(args.file) if args.file else DEFAULT_CONTESTANTS
    except (OSError, ValueError) as e:
        print(f"✗ Could not read seed file: {e}", file=sys.stderr)
        sys.exit(1)

    url = redis_url(args.redis_host, args.redis_port, args.redis_db, args.redis_password)
    try:
        inserted = asyncio.run(seed(url, contestants))
    except StoreUnavailable as e:
        print(f"✗ {e.message}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n✗ Seeding interrupted by user", file=sys.stderr)
        sys.exit(1)

    if inserted:
        print(f"✓ Seeded {inserted} contestants")
    else:
        print("✓ Store already has contestants, nothing seeded")


if __name__ == '__main__':
    main()
