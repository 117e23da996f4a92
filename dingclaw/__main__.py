"""
Entry point for running dingclaw as a module: python -m dingclaw
"""

from dingclaw.cli.commands import app

if __name__ == "__main__":
    app()
