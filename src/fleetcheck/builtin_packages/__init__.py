"""First-party check packages shipped with fleetcheck and run in-process."""
