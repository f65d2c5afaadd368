"""Command line interface for testing configuration loading"""
import sys
from pathlib import Path

from . import load_settings_conf, SettingsError

SECRET_KEYS = {'content_jwt', 'db_url'}

def main():
    """Display loaded configuration"""
    settings_path = sys.argv[1] if len(sys.argv) > 1 else "."
    
    try:
        settings = load_settings_conf(settings_path)
    except SettingsError as e:
        print(f"\n{e}")
        sys.exit(1)
    
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings.items():
        if key in SECRET_KEYS and value:
            value = '********'
        print(f"{key}: {value}")
        
    # Save example configuration file
    examples_dir = Path("examples")
    examples_dir.mkdir(exist_ok=True)
    
    with open(examples_dir / "settings.conf.example", "w") as f:
        f.write("""[DEFAULT]
# Ledger JSON-RPC endpoint
rpc_url = https://api.devnet.solana.com
# Deployed carbon credit exchange program
program_id = G1oyFNSMSHRBPG6LWWpAMhJJNf23HWjNpq8FALJSUqs3
# Off-chain metadata store
db_url = postgresql://root@localhost:26257/carbon?sslmode=disable
# Signing identity (JSON array of 64 secret key bytes)
keypair_path = ~/.config/solana/id.json
commitment = confirmed
confirm_timeout = 60
poll_interval = 2
# Content store (PINATA_JWT environment variable is used when empty)
content_api_url = https://api.pinata.cloud
content_jwt =
gateway_url = https://gateway.pinata.cloud/ipfs/
# Backfill monitor
sync_interval = 300
sync_batch_size = 50
token_symbol = CO2C
""")

if __name__ == "__main__":
    main()
