"""Timer, ledger and state-container services. Import submodules directly."""
