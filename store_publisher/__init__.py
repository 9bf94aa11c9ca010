"""store-publisher: publish mobile app artifacts to Google Play and App Store Connect."""

__version__ = "1.0.0"
