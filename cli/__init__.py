"""Terminal rendering for the DevLaunch CLI (see cli/display.py)."""
