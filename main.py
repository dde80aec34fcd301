"""
Entrypoint: load .env and config, then serve the fetch API
"""

from webfetch.api import run


if __name__ == "__main__":
    run()
