# claim_models.py
from pydantic import BaseModel, Field
from typing import Optional

# base58, 32-44 chars
ADDRESS_PATTERN = r"^[1-9A-HJ-NP-Za-km-z]{32,44}$"


# Input models
class WalletIn(BaseModel):
    walletAddress: str = Field(..., pattern=ADDRESS_PATTERN)


# Output models
class ClaimOut(BaseModel):
    claimId: int
    amount: str
    bonusClaimId: Optional[int] = None
    bonusAmount: Optional[str] = None
    remaining: str
    transactionHash: Optional[str]
    bonusTransactionHash: Optional[str] = None
    success: bool
    bonusSuccess: bool = False
    message: str


class EligibilityOut(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    resetTime: Optional[str] = None
    txnCount: int
    proposedAmount: str
    balanceExceeded: bool
    remainingPool: Optional[str] = None
    # "Unknown" when the chain could not be read
    nativeFogo: str
    splFogo: str
    totalFogo: str
    exceededType: Optional[str] = None


class WalletBalancesOut(BaseModel):
    walletAddress: str
    nativeFogo: str
    splFogo: str
    totalFogo: str
    eligible: bool
    exceededType: Optional[str] = None


class FaucetStatusOut(BaseModel):
    balance: str
    dailyLimit: str
    dailyDistributed: str
    remainingToday: str
    isActive: bool
    lastRefill: str
    nextRefill: str
    totalClaims: int
    totalUsers: int
    totalDistributed: str
    bonusEnabled: bool
    minTransactionCount: int


class RecentClaimOut(BaseModel):
    id: int
    walletAddress: str
    amount: str
    status: str
    transactionHash: Optional[str]
    timestamp: str
    timeAgo: str


class ActivityOut(BaseModel):
    id: int
    type: str  # "claim" | "bonus"
    walletAddress: str
    amount: str
    status: str
    transactionHash: Optional[str]
    timestamp: str
    timeAgo: str


class LeaderboardEntryOut(BaseModel):
    rank: int
    walletAddress: str
    claims: int
    totalAmount: str
    lastClaim: str
    lastClaimAgo: str
    bonusClaims: int
    totalBonusAmount: str


class ChartPointOut(BaseModel):
    date: str
    claims: int
    users: int


class StatsOut(BaseModel):
    totalClaims: int
    totalUsers: int
    totalDistributed: str
    totalBonusDistributed: str
    lastUpdated: str


class BonusStatsOut(BaseModel):
    totalBonusDistributed: str
    totalBonusClaims: int
    lastUpdated: Optional[str]
    conversionRate: str
    bonusTokenMint: str


class HealthOut(BaseModel):
    status: str
    timestamp: str
    database: str
    chain: Optional[str] = None

