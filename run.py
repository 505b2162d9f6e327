"""Run the gateway supervisor service."""

from gateway_supervisor.__main__ import main

if __name__ == "__main__":
    main()
