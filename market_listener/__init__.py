import os
import sys


def main():
    """Console script: runs the listen_market management command"""
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "market_listener.settings")
    from django.core.management import execute_from_command_line

    execute_from_command_line([sys.argv[0], "listen_market", *sys.argv[1:]])
