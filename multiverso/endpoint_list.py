"""Reads a list of server endpoints from a text file."""

from __future__ import annotations

from . import log

__all__ = ["EndpointList"]


class EndpointList:
    """Endpoints read from lines of "<id> <endpoint>", kept in file order.

    The ids in the file are read but the endpoints are indexed by their
    position in the file.
    """

    def __init__(self, filename):
        try:
            with open(filename, encoding="utf-8") as handle:
                tokens = handle.read().split()
        except OSError:
            log.error(
                "Error on creating EndpointList, FILE OPENING FAIL: %s\n", filename
            )
            raise
        self._endpoints: list[str] = []
        for id_token, endpoint in zip(tokens[::2], tokens[1::2]):
            try:
                int(id_token)
            except ValueError:
                break
            self._endpoints.append(endpoint)

    def get_endpoint(self, id) -> str:
        """Return the endpoint at position ``id``, or "" if out of range."""
        return self._endpoints[id] if 0 <= id < len(self._endpoints) else ""

    def __len__(self) -> int:
        return len(self._endpoints)