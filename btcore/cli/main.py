"""Command-line interface for btcore.

Commands mirror the stages of the core: decode a bencoded value, inspect a
torrent, ask the tracker for peers, handshake with a peer, and download a
single piece or the whole torrent.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from btcore.config import init_config
from btcore.core.bencode import decode, to_json_compatible
from btcore.core.torrent import TorrentParser
from btcore.exceptions import (
    BtCoreError,
    HandshakeFailed,
    MessageError,
    PeerConnectionError,
    PieceHashMismatch,
)
from btcore.models import Config, LogLevel, PeerInfo, TorrentInfo
from btcore.peer.connection import AsyncPeerConnection
from btcore.piece.downloader import PieceDownloader, download_torrent
from btcore.storage import PieceWriter
from btcore.tracker import AsyncTrackerClient
from btcore.utils.peer_id import generate_peer_id

logger = logging.getLogger(__name__)

VERBOSITY_LEVELS = {1: LogLevel.INFO}


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


def _peer_id(ctx: click.Context) -> bytes:
    return ctx.obj["peer_id"]


def _load_torrent(path: str) -> TorrentInfo:
    return TorrentParser().parse(path)


def _run(coro: Any) -> Any:
    """Run a coroutine, turning core errors into CLI errors."""
    try:
        return asyncio.run(coro)
    except BtCoreError as e:
        raise click.ClickException(str(e)) from None


async def _discover_peers(ctx: click.Context, torrent: TorrentInfo) -> list[PeerInfo]:
    config = _config(ctx)
    async with AsyncTrackerClient(_peer_id(ctx), config=config.network) as tracker:
        response = await tracker.announce(torrent)
    return response.peers


def _parse_peer(address: str) -> PeerInfo:
    try:
        return PeerInfo.from_address(address)
    except ValueError as e:
        raise click.BadParameter(str(e)) from None


@click.group()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.pass_context
def cli(ctx: click.Context, config_file: str | None, verbose: int) -> None:
    """btcore - minimal BitTorrent client."""
    ctx.ensure_object(dict)
    try:
        manager = init_config(config_file)
    except BtCoreError as e:
        raise click.ClickException(str(e)) from None

    config = manager.config
    # Without -v the configured level applies
    manager.setup_logging(VERBOSITY_LEVELS.get(verbose, LogLevel.DEBUG) if verbose else None)

    ctx.obj["config"] = config
    # One id for the whole process, shared by tracker and peers
    ctx.obj["peer_id"] = generate_peer_id(config.network.peer_id_prefix)


@cli.command("decode")
@click.argument("value")
def decode_cmd(value: str) -> None:
    """Decode a bencoded VALUE and print it as JSON."""
    try:
        decoded = decode(value.encode("utf-8"))
    except BtCoreError as e:
        raise click.ClickException(str(e)) from None
    click.echo(json.dumps(to_json_compatible(decoded)))


@cli.command("info")
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
def info_cmd(torrent_file: str) -> None:
    """Show metadata of TORRENT_FILE."""
    try:
        torrent = _load_torrent(torrent_file)
    except BtCoreError as e:
        raise click.ClickException(str(e)) from None

    console = Console()
    table = Table(show_header=False, box=None)
    table.add_row("Tracker URL:", torrent.announce)
    table.add_row("Name:", torrent.name)
    table.add_row("Length:", str(torrent.total_length))
    table.add_row("Info Hash:", torrent.info_hash_hex)
    table.add_row("Piece Length:", str(torrent.piece_length))
    table.add_row("Pieces:", str(torrent.num_pieces))
    console.print(table)
    console.print("Piece Hashes:")
    for digest in torrent.pieces:
        console.print(digest.hex())


@cli.command("peers")
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def peers_cmd(ctx: click.Context, torrent_file: str) -> None:
    """Ask the tracker of TORRENT_FILE for peers."""
    try:
        torrent = _load_torrent(torrent_file)
    except BtCoreError as e:
        raise click.ClickException(str(e)) from None
    for peer in _run(_discover_peers(ctx, torrent)):
        click.echo(str(peer))


@cli.command("handshake")
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("peer_address")
@click.pass_context
def handshake_cmd(ctx: click.Context, torrent_file: str, peer_address: str) -> None:
    """Handshake with PEER_ADDRESS (ip:port) and print its peer id."""
    peer = _parse_peer(peer_address)
    try:
        torrent = _load_torrent(torrent_file)
    except BtCoreError as e:
        raise click.ClickException(str(e)) from None

    async def run() -> bytes:
        connection = AsyncPeerConnection(
            peer,
            torrent.info_hash,
            _peer_id(ctx),
            _config(ctx).network,
        )
        try:
            await connection.connect()
            return await connection.handshake()
        finally:
            await connection.close()

    remote_id = _run(run())
    click.echo(f"Peer ID: {remote_id.hex()}")


@cli.command("download-piece")
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("piece_index", type=int)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    required=True,
    help="File to write the piece to",
)
@click.option(
    "--peer",
    "peer_addresses",
    multiple=True,
    help="Peer ip:port to use instead of asking the tracker (repeatable)",
)
@click.pass_context
def download_piece_cmd(
    ctx: click.Context,
    torrent_file: str,
    piece_index: int,
    output: str,
    peer_addresses: tuple[str, ...],
) -> None:
    """Download and verify one piece of TORRENT_FILE."""
    try:
        torrent = _load_torrent(torrent_file)
    except BtCoreError as e:
        raise click.ClickException(str(e)) from None
    if not 0 <= piece_index < torrent.num_pieces:
        msg = f"Piece index must be between 0 and {torrent.num_pieces - 1}"
        raise click.BadParameter(msg, param_hint="PIECE_INDEX")
    explicit_peers = [_parse_peer(a) for a in peer_addresses]
    network = _config(ctx).network

    async def run() -> bytes:
        peers = explicit_peers or await _discover_peers(ctx, torrent)
        for peer in peers:
            try:
                async with AsyncPeerConnection(peer, torrent.info_hash, _peer_id(ctx), network) as conn:
                    return await PieceDownloader(conn, torrent).download_piece(piece_index)
            except (HandshakeFailed, PeerConnectionError, MessageError, PieceHashMismatch) as e:
                logger.warning("Peer %s failed: %s", peer, e)
        msg = f"No peer delivered piece {piece_index}"
        raise click.ClickException(msg)

    data = _run(run())
    Path(output).parent.mkdir(parents=True, exist_ok=True)
    Path(output).write_bytes(data)
    click.echo(f"Piece {piece_index} downloaded to {output}.")


@cli.command("download")
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    required=True,
    help="File to write the content to",
)
@click.pass_context
def download_cmd(ctx: click.Context, torrent_file: str, output: str) -> None:
    """Download every piece of TORRENT_FILE."""
    try:
        torrent = _load_torrent(torrent_file)
    except BtCoreError as e:
        raise click.ClickException(str(e)) from None
    writer = PieceWriter(output, torrent.piece_length, torrent.total_length)

    async def run():
        peers = await _discover_peers(ctx, torrent)
        if not peers:
            msg = "Tracker returned no peers"
            raise click.ClickException(msg)
        return await download_torrent(
            torrent,
            peers,
            writer.write_piece,
            _peer_id(ctx),
            config=_config(ctx).network,
        )

    result = _run(run())
    if not result.ok:
        failed = sorted(result.abandoned | result.missing)
        msg = f"Download incomplete: {len(failed)} pieces failed ({failed[:10]})"
        raise click.ClickException(msg)
    click.echo(f"Downloaded {torrent_file} to {output}.")


def main() -> None:
    """Console script entry point."""
    cli(obj={})
