PACKAGE_VERSION = '0.9.0'                          # version of the client package
PACKAGE_DATE = '2026-10-19T12:00:00.000000+00:00'  # official timestamp for client package

# The version of the wallet file format written by `WalletKeyStore`.
WALLET_FILE_VERSION = 1
