#!/usr/bin/env python3
"""
Megalist HTTP Server Runner
"""

from megalist.crosscutting.config import load_environment
from megalist.interfaces.http import HTTPServer, build_service


def main():
    """Run the HTTP server."""
    load_environment()
    server = HTTPServer(
        host='localhost',
        port=3000,
        debug=True,
        service_factory=build_service,
    )
    server.run()


if __name__ == '__main__':
    main()
