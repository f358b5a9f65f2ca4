#!/usr/bin/env python3
"""Entry point for running the orientation trigger as a module."""

from orientation_trigger.daemon import main

if __name__ == "__main__":
    main()
