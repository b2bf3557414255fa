"""bookrag embedding providers (on-device model and remote APIs)."""
