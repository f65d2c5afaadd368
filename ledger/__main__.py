"""Command line interface for checking a ledger node and the exchange accounts

Usage:
    python -m ledger [settings_dir] [token_id]
"""
import asyncio
import sys

from config import load_settings_conf, SettingsError
from addresses import exchange_address, listing_address, retirement_address
from . import (
    LedgerContext, LedgerClient, RPCError, NodeConnectionError, SolanaRPCError,
    LayoutError, decode_exchange, decode_listing, decode_retirement
)


async def check_ledger(settings_path: str, token_id: str = None):
    """Query node health, the exchange account and optionally one token"""
    settings = load_settings_conf(settings_path)
    async with LedgerContext.from_settings(settings) as context:
        client = LedgerClient(context)
        try:
            print("\nNode:")
            print("-" * 50)
            version = await context.rpc.getVersion()
            slot = await context.rpc.getSlot()
            print(f"  Version: {version.get('solana-core')}")
            print(f"  Slot: {slot}")

            print("\nExchange:")
            print("-" * 50)
            address, bump = exchange_address(context.program_id)
            account = await client.fetch_account(address)
            if account is None:
                print(f"  {address} not initialized")
            else:
                exchange = decode_exchange(account.data)
                print(f"  Address: {address} (bump {bump})")
                print(f"  Authority: {exchange.authority}")
                print(f"  Total credits: {exchange.total_credits}")

            if token_id:
                print(f"\nToken {token_id}:")
                print("-" * 50)
                listing_addr, _ = listing_address(context.program_id, token_id)
                retired_addr, _ = retirement_address(context.program_id, token_id)
                listing, retirement = await client.fetch_accounts([listing_addr, retired_addr])
                if listing is None:
                    print("  Not listed")
                else:
                    info = decode_listing(listing.data)
                    print(f"  Listed by {info.seller} for {info.price} lamports")
                if retirement is None:
                    print("  Not retired")
                else:
                    record = decode_retirement(retirement.data)
                    print(f"  Retired by {record.retired_by} for {record.beneficiary}")

        except NodeConnectionError as e:
            print(f"\nFailed to reach ledger node:\n  {e}")
        except SolanaRPCError as e:
            print(f"\nNode error [{e.code}] in {e.method}:\n  {e}")
        except (RPCError, LayoutError) as e:
            print(f"\nUnexpected response: {e}")


if __name__ == "__main__":
    args = sys.argv[1:]
    try:
        asyncio.run(check_ledger(args[0] if args else ".", args[1] if len(args) > 1 else None))
    except SettingsError as e:
        print(f"\n{e}")
        sys.exit(1)
