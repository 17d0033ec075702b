"""
StreamBot package __main__ entry point.

Allows running with: python -m streambot
"""

from streambot.app.run import main

if __name__ == "__main__":
    main()
