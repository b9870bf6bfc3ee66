"""Shell handlers: run-command and set-env."""
