"""External service integrations: payment processor, marketplaces, notifications."""
