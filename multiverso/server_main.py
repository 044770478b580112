"""Command line entry point that runs a standalone parameter server."""

from __future__ import annotations

import sys

import zmq

from . import log
from .cl_parser import CommandLineParser
from .endpoint_list import EndpointList
from .log import LogLevel
from .server import Server

__all__ = ["help_text", "get_log_level", "main"]

_HELP = (
    "Commandline parameters:\n"
    "-serverid <id> -workers <num_of_workers> "
    "[-config <filename> | -endpoint <ip:port>] "
    "[-logfile <filename>] [-loglevel <level>]\n\n"
    "-serverid <id> -- The server id\n"
    "-workers <num_of_workers> -- Number of worker processes\n"
    "-config <filename> -- A server ZMQ socket endpoint list file\n"
    "-endpoint <ip:port> -- The ZMQ socket endpoint of the current server\n"
    "-logfile <filename> -- The log filename\n"
    "-loglevel <level> -- The log level\n"
)

_LEVELS = {
    "debug": LogLevel.DEBUG,
    "info": LogLevel.INFO,
    "error": LogLevel.ERROR,
    "fatal": LogLevel.FATAL,
}


def help_text() -> str:
    """Return the usage text."""
    return _HELP


def get_log_level(level) -> LogLevel:
    """Map a level name, in any case, to a LogLevel; unknown names give INFO."""
    return _LEVELS.get(level.lower(), LogLevel.INFO)


def _int_value(parser: CommandLineParser, key) -> int:
    """Read an integer option; missing or malformed values read as 0."""
    if not parser.has_key(key):
        return 0
    try:
        return parser.get_value(key, int)
    except ValueError:
        return 0


def main(argv=None) -> int:
    """Run a server until every worker has closed; return the exit status."""
    parser = CommandLineParser(sys.argv[1:] if argv is None else argv)
    if parser.has_key("-help"):
        print(help_text(), end="")
        return 0

    server_id = _int_value(parser, "-serverid")
    num_workers = _int_value(parser, "-workers")

    if parser.has_key("-logfile"):
        logfile = parser.get_value("-logfile")
        log.reset_log_file(logfile)
        log.info("Server %d: Reset log file to %s\n", server_id, logfile)
    if parser.has_key("-loglevel"):
        level = parser.get_value("-loglevel")
        log.reset_log_level(get_log_level(level))
        log.info("Server %d: Reset log level to %s\n", server_id, level)

    endpoint = "tcp://"
    try:
        if parser.has_key("-config"):
            endpoint += EndpointList(parser.get_value("-config")).get_endpoint(server_id)
        elif parser.has_key("-endpoint"):
            endpoint += parser.get_value("-endpoint")
        server = Server(server_id, num_workers, endpoint)
    except (OSError, ValueError, zmq.ZMQError) as exc:
        log.error("Server %d: cannot start at %s: %s\n", server_id, endpoint, exc)
        return 1

    try:
        server.wait_to_complete()
    except KeyboardInterrupt:
        server.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())