"""Image optimizer: WebP/AVIF conversion, batch scheduling and format-negotiated serving."""
