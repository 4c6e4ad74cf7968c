#!/usr/bin/env python3
import json
import sys
import secrets
from pathlib import Path

from bip32 import BIP32
from clii import App

from decaying import DecayConfig

cli = App('createconfig', description="Create a decaying 2-of-2 wallet configuration file.")


@cli.main
def main(
    wallet_name: str = 'decaying2of2',
    network: str = 'regtest',
    block_delay: int = 2,
    fund_value_sats: int = 1_000,
    fee_value_sats: int = 200,
    filepath: str = './config.json',
    secretspath: str = './secrets.json',
    counterparty_xpub: str = '',
    counterparty_seed_hex: str = '',
) -> None:
    """
    Create a new decaying 2-of-2 configuration. Don't use this with real money!

    Unless `counterparty_xpub` is given, a counterparty key is generated and its
    xpriv written into `secretspath` - obviously in production the counterparty
    would hold that themselves, but the data in `config.json` isn't sensitive,
    whereas the stuff in `secrets.json` is.
    """
    if Path(filepath).exists():
        if input(f"Config already exists at {filepath} - overwrite? [yn] ") != 'y':
            sys.exit(1)

    bip32_network = "main" if network == "main" else "test"
    counterparty32 = None

    if counterparty_xpub:
        # Raises if the xpub doesn't parse.
        BIP32.from_xpub(counterparty_xpub)
    else:
        # Not necessarily secure, don't use for real money, etc. etc.
        seed: bytes = secrets.token_bytes(32)
        if counterparty_seed_hex:
            seed = bytes.fromhex(counterparty_seed_hex)
        else:
            print(
                "!! using (probably insecure?) `secrets.token_bytes` for the "
                "counterparty key -- don't use with real money")
        counterparty32 = BIP32.from_seed(seed, network=bip32_network)
        counterparty_xpub = counterparty32.get_xpub()

    config = DecayConfig(
        wallet_name=wallet_name,
        counterparty_xpub=counterparty_xpub,
        block_delay=block_delay,
        network=network,
        fund_value_sats=fund_value_sats,
        fee_value_sats=fee_value_sats,
        filepath=Path(filepath),
    )
    config.save()

    if counterparty32 is None:
        return

    secpath = Path(secretspath)
    secd = {}
    if secpath.exists():
        secd.update(json.loads(secpath.read_text()))

    secd[config.wallet_name] = {
        'counterparty_xpriv': counterparty32.get_xpriv(),
    }
    secpath.write_text(json.dumps(secd, indent=2))


if __name__ == "__main__":
    cli.run()
