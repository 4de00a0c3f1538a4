"""Pure booking rules: capabilities, payment schedule and payment stages."""
