import os
from unittest.mock import patch

import pytest

from spvkit.exceptions import Corrupt, NotFound
from spvkit.storage import WalletStorage


def test_read_missing(tmp_path) -> None:
    storage = WalletStorage(os.path.join(tmp_path, "missing.wallet"))
    assert not storage.exists()
    with pytest.raises(NotFound):
        storage.read()


def test_write_and_read(tmp_path) -> None:
    path = os.path.join(tmp_path, "a.wallet")
    storage = WalletStorage(path)
    storage.write({ "a": 1, "b": [ "x" ] })
    assert storage.exists()
    assert storage.read() == { "a": 1, "b": [ "x" ] }
    assert os.listdir(tmp_path) == [ "a.wallet" ]


@pytest.mark.parametrize("content", (b"not json", b"[1, 2]", b"\xff\xfe"))
def test_read_corrupt(tmp_path, content) -> None:
    path = os.path.join(tmp_path, "a.wallet")
    with open(path, "wb") as f:
        f.write(content)
    with pytest.raises(Corrupt):
        WalletStorage(path).read()


def test_failed_write_keeps_old_document(tmp_path) -> None:
    path = os.path.join(tmp_path, "a.wallet")
    storage = WalletStorage(path)
    storage.write({ "version": 1 })

    with patch("os.replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            storage.write({ "version": 2 })

    assert storage.read() == { "version": 1 }
    # The temporary file is cleaned up.
    assert os.listdir(tmp_path) == [ "a.wallet" ]
