"""Mock ad platform servers for tests."""

from activation_engine.tests.mocks.mock_platforms import (
    MockGoogleAdsServer,
    MockMetaServer,
    MockPlatformServer,
    MockTikTokServer,
    RecordedRequest,
)

__all__ = [
    "MockGoogleAdsServer",
    "MockMetaServer",
    "MockPlatformServer",
    "MockTikTokServer",
    "RecordedRequest",
]
