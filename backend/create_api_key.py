#!/usr/bin/env python3
"""
Script to create the first API key for an owner.

API keys are managed through the API, which itself requires a key; this
bootstraps one directly against the database.

Usage:
    # From inside the Docker container:
    docker exec -it filedrop-api python create_api_key.py --owner acme --name "CI uploads"

    # Restricted key with a custom hourly limit:
    python create_api_key.py --owner acme --name uploader --scope uploads:write --rate-limit 200
"""
import sys
import asyncio
import argparse

from filedrop.config import settings
from filedrop.database import create_engine, create_session_factory, init_db
from filedrop.services.api_keys import ApiKeyService


async def create_key(owner_id, name, scopes, rate_limit):
    engine = create_engine(settings.database_url)
    try:
        await init_db(engine)
        session_factory = create_session_factory(engine)
        service = ApiKeyService(
            rate_window_seconds=settings.api_key_rate_window_seconds,
            default_rate_limit=settings.api_key_default_rate_limit,
            bcrypt_rounds=settings.api_key_bcrypt_rounds,
            environment=settings.environment,
        )
        async with session_factory() as db:
            return await service.create_api_key(
                db,
                owner_id=owner_id,
                name=name,
                scopes=scopes,
                rate_limit=rate_limit,
            )
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description='Create an API key for an owner')
    parser.add_argument('--owner', required=True, help='Owner ID the key acts for')
    parser.add_argument('--name', default='Default', help='Human readable key name')
    parser.add_argument('--scope', action='append', default=[], dest='scopes',
                        help='Scope to grant (repeatable, none means unrestricted)')
    parser.add_argument('--rate-limit', type=int, default=None,
                        help=f'Requests per hour (default: {settings.api_key_default_rate_limit})')
    args = parser.parse_args()

    try:
        api_key, plain_key = asyncio.run(
            create_key(args.owner, args.name, args.scopes, args.rate_limit)
        )
    except Exception as e:
        print(f"ERROR: Failed to create API key: {e}")
        sys.exit(1)

    print(f"Created API key {api_key.id} ({api_key.key_prefix}) for owner '{api_key.owner_id}'")
    print("Store this key now, it will not be shown again:")
    print(f"  {plain_key}")


if __name__ == '__main__':
    main()
