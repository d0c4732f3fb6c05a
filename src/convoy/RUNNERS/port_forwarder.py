"""
Relay for published ports: listens on a host address and forwards every TCP
connection to a container's fabric address.

Run as ``python -m convoy.RUNNERS.port_forwarder --listen HOST:PORT --target HOST:PORT``.
"""
import asyncio
import logging
import sys
from typing import List, Tuple

import click

logger = logging.getLogger(__name__)


def split_address(value: str) -> Tuple[str, int]:
    host, _, port = value.rpartition(':')
    return host or '0.0.0.0', int(port)


def forwarder_command(listen: Tuple[str, int], target: Tuple[str, int]) -> List[str]:
    """The argv that starts a forwarder process with the current interpreter."""
    return [
        sys.executable, "-m", "convoy.RUNNERS.port_forwarder",
        "--listen", f"{listen[0]}:{listen[1]}",
        "--target", f"{target[0]}:{target[1]}",
    ]


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Copies one direction; EOF is passed on as a half-close so replies still flow back."""
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
        else:
            writer.close()
    except OSError:
        writer.close()


async def serve(listen: Tuple[str, int], target: Tuple[str, int]) -> None:
    """
    Accepts connections forever, relaying each to the target in both directions.
    """
    async def handle(client_reader, client_writer):
        try:
            upstream_reader, upstream_writer = await asyncio.open_connection(*target)
        except OSError as e:
            logger.warning("Cannot reach %s:%d: %s", target[0], target[1], e)
            client_writer.close()
            return
        try:
            await asyncio.gather(
                _pipe(client_reader, upstream_writer),
                _pipe(upstream_reader, client_writer),
            )
        finally:
            upstream_writer.close()
            client_writer.close()

    server = await asyncio.start_server(handle, listen[0], listen[1], reuse_address=True)
    async with server:
        await server.serve_forever()


@click.command()
@click.option('--listen', required=True, help='HOST:PORT to accept connections on')
@click.option('--target', required=True, help='HOST:PORT to forward connections to')
def main(listen, target):
    """Forward a published host port to a container port."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s forwarder %(message)s")
    try:
        asyncio.run(serve(split_address(listen), split_address(target)))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
