import pytest

from tinytorrent.handshake import HANDSHAKE_LEN, Handshake, HandshakeError

INFO_HASH = b"Hello, world! 01234 "
PEER_ID = b"-GO0001-random_bytes"


def test_encode_decode():
    hs = Handshake(info_hash=INFO_HASH, peer_id=PEER_ID)
    encoded = hs.encode()
    assert encoded == (
        b"\x13BitTorrent protocol\x00\x00\x00\x00\x00\x00\x00\x00"
        b"Hello, world! 01234 -GO0001-random_bytes"
    )
    assert Handshake.decode(encoded) == hs


def test_encoded_length():
    assert len(Handshake(INFO_HASH, PEER_ID).encode()) == HANDSHAKE_LEN


def test_decode_with_matching_expected_hash():
    encoded = Handshake(INFO_HASH, PEER_ID).encode()
    assert Handshake.decode(encoded, INFO_HASH).peer_id == PEER_ID


def test_decode_with_zero_expected_hash_accepts_any():
    encoded = Handshake(INFO_HASH, PEER_ID).encode()
    assert Handshake.decode(encoded, bytes(20)).info_hash == INFO_HASH


def test_decode_rejects_other_info_hash():
    encoded = Handshake(INFO_HASH, PEER_ID).encode()
    with pytest.raises(HandshakeError, match="info_hash"):
        Handshake.decode(encoded, b"\x01" * 20)


@pytest.mark.parametrize(
    "raw, what",
    [
        (b"", "pstrlen"),
        (b"\x12BitTorrent protocol", "pstrlen"),
        (b"\x13BitTorrent protocoX" + bytes(48), "pstr"),
        (b"\x13BitTorrent protocol\x00\x00", "reserved"),
        (b"\x13BitTorrent protocol" + bytes(8) + INFO_HASH[:5], "info_hash"),
        (b"\x13BitTorrent protocol" + bytes(8) + INFO_HASH + PEER_ID[:3], "peer_id"),
    ],
)
def test_decode_rejects_malformed(raw, what):
    with pytest.raises(HandshakeError, match=what):
        Handshake.decode(raw)


def test_wrong_sizes_rejected():
    with pytest.raises(ValueError):
        Handshake(b"short", PEER_ID)
    with pytest.raises(ValueError):
        Handshake(INFO_HASH, b"short")