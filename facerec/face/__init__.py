"""Face recognition building blocks (extractor/fallback/dataset/gallery/matcher/recognizer)."""
