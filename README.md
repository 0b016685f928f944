# tinytorrent

A small BitTorrent client for the terminal. Give it one or more `.torrent`
files, each paired with a directory to download into, and it announces to the
HTTP tracker, connects to peers, downloads and verifies pieces, and seeds what
it already has. A live table shows every torrent's size, piece counts,
download speed and a progress bar.

The package also ships a tiny in-memory HTTP tracker, handy for trying the
client out on a single machine.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Downloading

```
torrent-client (file.torrent destination_dir)...
```

Arguments come in pairs: a torrent file followed by the directory its
contents go to. For example:

```
torrent-client debian.torrent ~/Downloads another.torrent /destination
```

`torrent-client --version` prints the version.

What happens:

- Files already present in the destination are checked piece by piece, so a
  partly downloaded torrent picks up where it left off and a complete one is
  only seeded.
- Missing files are created at their full size before the download starts.
- The client accepts incoming peer connections on TCP port 6881.
- Press `Ctrl-C` to stop.

Logs go to `~/.torrent-client/app.log`, which is truncated on every start.

The progress table has these columns:

| Column              | Meaning                                        |
|---------------------|------------------------------------------------|
| Name                | path of the `.torrent` file                    |
| Size                | total size of all files in the torrent         |
| Pieces (total)      | number of pieces in the torrent                |
| Pieces (downloaded) | pieces received and verified so far            |
| Download speed      | average over the last twenty seconds           |
| Progress            | a twenty-cell bar                              |

## A tracker for local testing

```
faketracker [--host HOST] [--port PORT]
```

starts an HTTP tracker (by default on all interfaces, port 8080) with an
`/announce` endpoint. It keeps the peers of each info hash in memory, returns
the IPv4 ones in compact form with an interval of 30 seconds, and forgets a
peer when it announces the `stopped` event. Point a torrent's `announce` URL
at `http://127.0.0.1:8080/announce`, start one client seeding from a
directory that already holds the files and another downloading into an empty
one, and they will find each other.

## Using the library

The building blocks can be used on their own:

- `tinytorrent.bencode` – `encode`, `encode_all`, `decode`, `decode_from`
  and `format_tree`; bad input raises `BencodeError`.
- `tinytorrent.torrent` – `TorrentFile.open(path, download_dir)` and
  `TorrentFile.from_bytes(...)` read metainfo (single- and multi-file
  torrents) and give the announce URL, info hash, piece hashes and the files
  to download; `verify_piece` checks a piece against its SHA-1.
- `tinytorrent.bitfield` – `Bitfield`, the set of pieces a peer has.
- `tinytorrent.divide` – `divide`, splitting a length into pieces and blocks.
- `tinytorrent.storage` – `Storage` and `TorrentData`, which map the
  torrent's single byte stream onto its files on disk.
- `tinytorrent.download` – `BlockGenerator` and `create_block_generators`,
  which hand out blocks to request and verify pieces as they complete.
- `tinytorrent.message`, `tinytorrent.handshake` – the peer wire protocol.
- `tinytorrent.peer`, `tinytorrent.manager`, `tinytorrent.listener` – peers,
  the conversation with one peer (`PeerManager`) and incoming connections.
- `tinytorrent.tracker` – `Tracker` and `TrackerResponse` for announcing to
  an HTTP tracker.
- `tinytorrent.faketracker` – `FakeTracker`, the tracker behind the
  `faketracker` command.
- `tinytorrent.client` – `Client`, which ties it all together.
- `tinytorrent.ui` – `ProgressTable` and `run_ui`, the terminal view.

```python
from tinytorrent.torrent import TorrentFile

torrent = TorrentFile.open("debian.torrent", "/tmp/downloads")
print(torrent.pieces_count(), torrent.total_length())
```

## What it does not do

- Only HTTP trackers with compact peer lists are supported; there is no UDP
  tracker support, no DHT and no magnet links.
- Uploaded and downloaded byte counts are always announced as 0.
- The listening port is fixed at 6881 for the client.
</parameter>