from datetime import datetime, timezone
from uuid import UUID

REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
BUYER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
UPLINE_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
INACTIVE_ID = UUID("880e8400-e29b-41d4-a716-446655440003")
UNKNOWN_ID = UUID("00000000-0000-0000-0000-000000000000")

VALID_ADDRESS = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0"
T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
