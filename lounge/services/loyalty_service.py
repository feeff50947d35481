from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from sqlalchemy import desc
from sqlalchemy.orm import Session

from lounge.config import Config
from lounge.models import BonusGame, LoyaltyTransaction, Reward, User, utc_now
from lounge.observability import increment_counter, record_event
from lounge.services.validation import sanitize_text

# (label, lowest balance) from the top tier down
LOYALTY_TIERS = (
    ("Platinum", 1001),
    ("Gold", 501),
    ("Silver", 101),
    ("Bronze", 0),
)


def tier_for_points(points: int) -> str:
    for label, floor in LOYALTY_TIERS:
        if (points or 0) >= floor:
            return label
    return "Bronze"


class LoyaltyService:
    """Points ledger, rewards catalogue and streak bonus games."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config

    # ------------------------------------------------------------------
    # Ledger primitives (caller commits)
    # ------------------------------------------------------------------
    def apply_points(
        self,
        user: User,
        points: int,
        description: str,
        transaction_id: Optional[int] = None,
    ) -> LoyaltyTransaction:
        if points < 0 and (user.points or 0) < -points:
            raise ValueError("Insufficient points")
        user.points = (user.points or 0) + points
        entry = LoyaltyTransaction(
            userID=user.userID,
            points=points,
            description=description,
            transactionID=transaction_id,
            created_at=utc_now(),
        )
        self.db.add(entry)
        if points > 0:
            increment_counter("loyalty_points_awarded_total", amount=points)
        elif points < 0:
            increment_counter("loyalty_points_redeemed_total", amount=-points)
        return entry

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------
    def award_points(
        self,
        user_id: int,
        points: int,
        description: str,
    ) -> Tuple[bool, str, Optional[LoyaltyTransaction]]:
        if points <= 0:
            return False, "Points to award must be positive", None
        user = self.db.get(User, user_id)
        if not user:
            return False, "User not found", None

        entry = self.apply_points(user, points, sanitize_text(description) or "Points awarded")
        self.db.commit()
        record_event("loyalty_points_awarded", {"user_id": user_id, "points": points})
        self.logger.info("Awarded %s points", points, extra={"user_id": user_id})
        return True, f"Awarded {points} points", entry

    def redeem_points(
        self,
        user_id: int,
        points: int,
        description: str,
    ) -> Tuple[bool, str, Optional[LoyaltyTransaction]]:
        if points <= 0:
            return False, "Points to redeem must be positive", None
        user = self.db.get(User, user_id)
        if not user:
            return False, "User not found", None
        if (user.points or 0) < points:
            return False, "Insufficient points", None

        entry = self.apply_points(user, -points, sanitize_text(description) or "Points redeemed")
        self.db.commit()
        record_event("loyalty_points_redeemed", {"user_id": user_id, "points": points})
        return True, f"Redeemed {points} points", entry

    def balance(self, user_id: int) -> Optional[int]:
        user = self.db.get(User, user_id)
        return (user.points or 0) if user else None

    def history(self, user_id: int, limit: int = 50) -> List[LoyaltyTransaction]:
        return (
            self.db.query(LoyaltyTransaction)
            .filter(LoyaltyTransaction.userID == user_id)
            .order_by(desc(LoyaltyTransaction.created_at), desc(LoyaltyTransaction.loyaltyTransactionID))
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------
    def list_rewards(self, active_only: bool = True) -> List[Reward]:
        query = self.db.query(Reward)
        if active_only:
            query = query.filter(Reward.is_active.is_(True))
        return query.order_by(Reward.points_cost).all()

    def create_reward(
        self,
        name: str,
        points_cost: int,
        description: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Reward]]:
        name = sanitize_text(name)
        if not name:
            return False, "Reward name is required", None
        if points_cost is None or points_cost <= 0:
            return False, "Reward cost must be a positive number of points", None
        reward = Reward(name=name, points_cost=points_cost, description=sanitize_text(description), is_active=True)
        self.db.add(reward)
        self.db.commit()
        return True, "Reward created", reward

    def redeem_reward(self, user_id: int, reward_id: int) -> Tuple[bool, str, Optional[LoyaltyTransaction]]:
        reward = self.db.get(Reward, reward_id)
        if not reward or not reward.is_active:
            return False, "Reward not found", None
        success, message, entry = self.redeem_points(user_id, reward.points_cost, f"Redeemed reward: {reward.name}")
        if success:
            increment_counter("rewards_redeemed_total", labels={"reward": reward.name})
            message = f"Redeemed {reward.name}"
        return success, message, entry

    # ------------------------------------------------------------------
    # Bonus games
    # ------------------------------------------------------------------
    def grant_bonus_game(self, user: User, game_name: Optional[str]) -> BonusGame:
        bonus = BonusGame(userID=user.userID, game_name=game_name, used=False, created_at=utc_now())
        self.db.add(bonus)
        increment_counter("bonus_games_awarded_total")
        return bonus

    def award_bonus_game(self, user_id: int, game_name: Optional[str] = None) -> Tuple[bool, str, Optional[BonusGame]]:
        user = self.db.get(User, user_id)
        if not user:
            return False, "User not found", None
        bonus = self.grant_bonus_game(user, sanitize_text(game_name))
        self.db.commit()
        return True, "Bonus game awarded", bonus

    def unused_bonus_games(self, user_id: int) -> List[BonusGame]:
        return (
            self.db.query(BonusGame)
            .filter(BonusGame.userID == user_id, BonusGame.used.is_(False))
            .order_by(BonusGame.created_at, BonusGame.bonusGameID)
            .all()
        )

    def use_bonus_game(self, bonus_id: int) -> Tuple[bool, str, Optional[BonusGame]]:
        bonus = self.db.get(BonusGame, bonus_id)
        if not bonus:
            return False, "Bonus game not found", None
        if bonus.used:
            return False, "Bonus game already used", bonus
        bonus.used = True
        bonus.used_at = utc_now()
        self.db.commit()
        return True, "Bonus game redeemed", bonus

    def tier_for_points(self, points: int) -> str:
        return tier_for_points(points)

