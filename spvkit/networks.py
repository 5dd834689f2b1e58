from typing import Optional, Tuple, Type, Union

from bitcoinx import Bitcoin, BitcoinRegtest, BitcoinTestnet


class SVMainnet(object):
    ADDRTYPE_P2PKH = 0
    ADDRTYPE_P2SH = 5
    DEFAULT_PORT = 8333
    GENESIS = "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f"
    NAME = 'mainnet'
    WIF_PREFIX = 0x80
    COIN = Bitcoin

    DNS_SEEDS: Tuple[str, ...] = (
        "seed.bitcoinsv.io",
        "seed.satoshisvision.network",
        "seed.bitcoinseed.directory",
    )

    # The peer network decides how many peers have to announce a broadcast transaction back to
    # us before it is considered successful.
    BROADCAST_MIN_PEERS: Optional[int] = None


class SVTestnet(object):
    ADDRTYPE_P2PKH = 111
    ADDRTYPE_P2SH = 196
    DEFAULT_PORT = 18333
    GENESIS = "000000000933ea01ad0ee984209779baaec3ced90fa3f408719526f8d77f4943"
    NAME = 'testnet'
    WIF_PREFIX = 0xef
    COIN = BitcoinTestnet

    DNS_SEEDS: Tuple[str, ...] = (
        "testnet-seed.bitcoinsv.io",
        "testnet-seed.bitcoincloud.net",
    )

    # Test networks have few peers and one announcement is good enough.
    BROADCAST_MIN_PEERS: Optional[int] = 1


class SVRegTestnet(object):
    ADDRTYPE_P2PKH = 111
    ADDRTYPE_P2SH = 196
    DEFAULT_PORT = 18444
    GENESIS = "0f9188f13cb7b2c71f2a335e3a4fc328bf5beb436012afca590b1a11466e2206"
    NAME = 'regtest'
    WIF_PREFIX = 0xef
    COIN = BitcoinRegtest

    # Regtest nodes are never discovered, the local node is the only peer.
    DNS_SEEDS: Tuple[str, ...] = ()

    BROADCAST_MIN_PEERS: Optional[int] = 1


NetworkType = Union[Type[SVMainnet], Type[SVTestnet], Type[SVRegTestnet]]
