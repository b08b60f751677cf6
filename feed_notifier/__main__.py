"""Main module for the feed_notifier service.

This module allows the service to be run as a Python module using:
python -m feed_notifier

It delegates to the server application's main function.
"""

from feed_notifier.server.app import main

if __name__ == "__main__":
    main()
