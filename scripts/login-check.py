#!/usr/bin/env python3
"""
Login helper: logs in once with the BROKER_* credentials, lists the trading
accounts and prints the device ID to store for future logins.
Usage: PYTHONPATH=backend python3 scripts/login-check.py
"""
import asyncio
import sys

from broker_session.broker.exceptions import BrokerException
from broker_session.client import BrokerClient
from broker_session.config import get_settings, load_credentials


async def main() -> int:
    credentials = load_credentials()
    if credentials is None:
        print("Set BROKER_CLIENT_ID and BROKER_PASSWORD first.")
        return 1

    settings = get_settings()
    async with BrokerClient(settings=settings, credentials=credentials) as client:
        try:
            result = await client.connect()
        except BrokerException as e:
            print(f"Login failed: {e.reason}")
            return 1

        print(f"✅ Logged in via {settings.backend} backend")
        for account in result.accounts:
            marker = "*" if account.is_default else " "
            print(f"  {marker} {account.account_number}  {account.name}")
        if client.session.device_id:
            print(f"Device ID:  {client.session.device_id}  (set BROKER_DEVICE_ID to reuse it)")
        await client.logout()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
