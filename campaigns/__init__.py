from campaigns.dispatcher import CampaignDispatcher, DispatchLoop, normalize_phone
from campaigns.rate_limit import DialRateLimiter

__all__ = ["CampaignDispatcher", "DispatchLoop", "DialRateLimiter", "normalize_phone"]
