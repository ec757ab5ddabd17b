import asyncio
import logging
import uuid
from typing import List, Optional

from citysync.errors import ConflictError, ValidationError
from citysync.messages import trade_event
from citysync.models import Identity, TradeOffer, TradeStatus, TradeTerms, WorldState
import config

logger = logging.getLogger(__name__)


class TradeSystem:
    """Two-party money trades between worlds held by the registry.

    Funds are checked when the offer is made and checked again, under both
    worlds' locks, at the moment of acceptance.
    """

    async def create_offer(self, sender: Identity, to_party: str, offer_money: float = 0, request_money: float = 0,
                           message: Optional[str] = None) -> TradeOffer:
        if not to_party:
            raise ValidationError("RECIPIENT_REQUIRED", "Trade offer needs a recipient")
        if to_party == sender.user_id:
            raise ValidationError("SELF_TRADE", "Cannot send trade offer to yourself")
        if offer_money < 0 or request_money < 0:
            raise ValidationError("NEGATIVE_AMOUNT", "Trade amounts cannot be negative")
        if message and len(message) > config.TRADE_MESSAGE_MAX:
            raise ValidationError("MESSAGE_TOO_LONG", f"Message cannot exceed {config.TRADE_MESSAGE_MAX} characters")

        sender_world = await self.registry.world_for(sender.user_id)
        if sender_world is None:
            raise ValidationError("NO_ACTIVE_CITY", "You must have a city to trade")
        recipient_world = await self.registry.world_for(to_party)
        if recipient_world is None:
            self.mark_idle(sender_world.id)
            raise ValidationError("RECIPIENT_NOT_FOUND", "Recipient does not have a city to trade with")

        try:
            async with self.registry.locked(sender_world.id, recipient_world.id):
                if not sender_world.trading_enabled:
                    raise ValidationError("TRADING_DISABLED", "Trading is disabled for your city")
                if not recipient_world.trading_enabled:
                    raise ValidationError("RECIPIENT_TRADING_DISABLED", "Trading is disabled for recipient's city")
                if sender_world.treasury < offer_money:
                    raise ValidationError("INSUFFICIENT_FUNDS", "You do not have enough money for this trade")
                if recipient_world.treasury < request_money:
                    raise ValidationError("RECIPIENT_INSUFFICIENT_FUNDS", "Recipient does not have enough money for this trade")

                now = self.clock()
                offer = TradeOffer(
                    id=uuid.uuid4().hex,
                    from_party=sender.user_id,
                    to_party=to_party,
                    from_world=sender_world.id,
                    to_world=recipient_world.id,
                    from_username=sender.username,
                    offer=TradeTerms(money=offer_money),
                    request=TradeTerms(money=request_money),
                    created_at=now,
                    expires_at=now + config.OFFER_TTL_SECONDS,
                    message=message,
                )
                self.offers[offer.id] = offer
                self.persistence.queue_trade(offer)

                self.hub.send_to_party(sender.user_id, trade_event("tradeOfferSent", offer))
                self.hub.send_to_party(to_party, trade_event("tradeOfferReceived", offer, from_username=sender.username))
        finally:
            # 為了交易才載入的離線城市，之後照常卸載
            self.mark_idle(sender_world.id)
            self.mark_idle(recipient_world.id)

        self.events.log(f"{sender.username} 提出交易：給出 ${offer_money}，索取 ${request_money}")
        return offer

    async def accept_offer(self, party: Identity, trade_id: str) -> TradeOffer:
        offer = await self._find(trade_id)
        if offer.to_party != party.user_id:
            raise ValidationError("ACCESS_DENIED", "Not authorized to respond to this trade")
        self._check_pending(offer)

        try:
            await self._ensure_active(offer.from_world)
            await self._ensure_active(offer.to_world)

            async with self.registry.locked(offer.from_world, offer.to_world):
                # 取得鎖之後重新確認，期間可能已被別人處理或過期
                self._check_pending(offer)
                sender_world = self.registry.get(offer.from_world)
                recipient_world = self.registry.get(offer.to_world)
                if sender_world is None or recipient_world is None:
                    raise ConflictError("WORLD_UNAVAILABLE", "One or both cities no longer exist")

                offer.status = TradeStatus.ACCEPTED
                failure = self._revalidate(offer, sender_world, recipient_world)
                if failure is not None:
                    offer.status = TradeStatus.PENDING
                    logger.info("accept of trade %s failed: %s", offer.id, failure.code)
                    raise failure

                sender_world.treasury -= offer.offer.money
                sender_world.treasury += offer.request.money
                recipient_world.treasury -= offer.request.money
                recipient_world.treasury += offer.offer.money

                now = self.clock()
                sender_world.touch(now)
                recipient_world.touch(now)
                offer.status = TradeStatus.COMPLETED
                offer.completed_at = now
                self._closed_at[offer.id] = now
                for party_id in (offer.from_party, offer.to_party):
                    self.trade_stats[party_id] = self.trade_stats.get(party_id, 0) + 1

                self.persistence.queue_world(sender_world.id)
                self.persistence.queue_world(recipient_world.id)
                self.persistence.queue_trade(offer)

                self.hub.send_to_party(offer.from_party, trade_event("tradeAccepted", offer, by=party.username))
                self.hub.send_to_party(offer.from_party, trade_event("tradeCompleted", offer, with_username=party.username))
                self.hub.send_to_party(offer.to_party, trade_event("tradeCompleted", offer, with_username=offer.from_username))
        finally:
            self.mark_idle(offer.from_world)
            self.mark_idle(offer.to_world)

        self.events.log(f"交易完成：{offer.from_username} ↔ {party.username}")
        return offer

    async def reject_offer(self, party: Identity, trade_id: str, reason: Optional[str] = None) -> TradeOffer:
        offer = await self._find(trade_id)
        if offer.to_party != party.user_id:
            raise ValidationError("ACCESS_DENIED", "Not authorized to respond to this trade")
        self._check_pending(offer)

        self._close(offer, TradeStatus.REJECTED)
        self.hub.send_to_party(offer.from_party, trade_event("tradeRejected", offer, by=party.username, reason=reason or "Offer rejected"))
        self.hub.send_to_party(offer.to_party, trade_event("tradeRejectionSent", offer))
        self.events.log(f"{party.username} 拒絕了 {offer.from_username} 的交易")
        return offer

    async def cancel_offer(self, party: Identity, trade_id: str) -> TradeOffer:
        offer = await self._find(trade_id)
        if offer.from_party != party.user_id:
            raise ValidationError("ACCESS_DENIED", "Only the sender can cancel this trade")
        self._check_pending(offer)

        self._close(offer, TradeStatus.CANCELED)
        self.hub.send_to_party(offer.to_party, trade_event("tradeCanceled", offer, by=party.username))
        self.hub.send_to_party(offer.from_party, trade_event("tradeCanceled", offer, by=party.username))
        self.events.log(f"{party.username} 取消了交易 {offer.id[:8]}")
        return offer

    async def get_offer(self, party: Identity, trade_id: str) -> TradeOffer:
        offer = await self._find(trade_id)
        if party.user_id not in (offer.from_party, offer.to_party):
            raise ValidationError("ACCESS_DENIED", "Access denied")
        self._touch(offer, self.clock())
        return offer

    async def list_offers(self, party: Identity, status: Optional[str] = None) -> List[TradeOffer]:
        stored = await asyncio.to_thread(self.store.list_trades)
        merged = {o.id: o for o in stored}
        merged.update(self.offers)

        now = self.clock()
        result = []
        for offer in merged.values():
            if party.user_id not in (offer.from_party, offer.to_party):
                continue
            self._touch(offer, now)
            if status and status != "all" and offer.status.value != status:
                continue
            result.append(offer)
        result.sort(key=lambda o: o.created_at, reverse=True)
        return result

    def trades_completed(self, party_id: str) -> int:
        return self.trade_stats.get(party_id, 0)

    # --- 過期與清理 (由 tick 呼叫) ---
    def expire_offers(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        return sum(1 for offer in list(self.offers.values()) if self._touch(offer, now))

    def prune_offers(self, now: Optional[float] = None) -> int:
        # 結束的交易在記憶體索引保留一段時間，持久化的紀錄不受影響
        now = self.clock() if now is None else now
        stale = [tid for tid, closed in self._closed_at.items() if now - closed >= config.TRADE_CLEANUP_DELAY]
        for trade_id in stale:
            self.offers.pop(trade_id, None)
            del self._closed_at[trade_id]
        return len(stale)

    # --- 內部 ---
    async def _find(self, trade_id: str) -> TradeOffer:
        offer = self.offers.get(trade_id)
        if offer is not None:
            return offer
        stored = await asyncio.to_thread(self.store.load_trade, trade_id)
        if stored is None:
            raise ValidationError("TRADE_NOT_FOUND", "Trade not found")
        # 讀檔期間可能已被放回索引
        offer = self.offers.setdefault(trade_id, stored)
        if offer.status != TradeStatus.PENDING:
            self._closed_at.setdefault(trade_id, self.clock())
        return offer

    async def _ensure_active(self, world_id: str) -> WorldState:
        try:
            return await self.registry.activate(world_id)
        except ValidationError as err:
            raise ConflictError("WORLD_UNAVAILABLE", "One or both cities no longer exist") from err

    def _check_pending(self, offer: TradeOffer):
        if self._touch(offer, self.clock()):
            raise ConflictError("TRADE_EXPIRED", "Trade offer has expired")
        if offer.status == TradeStatus.EXPIRED:
            raise ConflictError("TRADE_EXPIRED", "Trade offer has expired")
        if offer.status != TradeStatus.PENDING:
            raise ConflictError("TRADE_NOT_PENDING", f"Trade is already {offer.status.value}")

    def _revalidate(self, offer: TradeOffer, sender_world: WorldState, recipient_world: WorldState) -> Optional[ConflictError]:
        if not sender_world.trading_enabled or not recipient_world.trading_enabled:
            return ConflictError("TRADING_DISABLED", "Trading was disabled for one of the cities")
        if sender_world.treasury < offer.offer.money:
            return ConflictError("SENDER_INSUFFICIENT_FUNDS", "Sender no longer has enough money for this trade")
        if recipient_world.treasury < offer.request.money:
            return ConflictError("RECIPIENT_INSUFFICIENT_FUNDS", "You do not have enough money for this trade")
        return None

    def _touch(self, offer: TradeOffer, now: float) -> bool:
        if offer.status != TradeStatus.PENDING or now < offer.expires_at:
            return False
        self._close(offer, TradeStatus.EXPIRED)
        event = trade_event("tradeExpired", offer)
        self.hub.send_to_party(offer.from_party, event)
        self.hub.send_to_party(offer.to_party, event)
        logger.info("trade %s expired", offer.id)
        return True

    def _close(self, offer: TradeOffer, status: TradeStatus):
        offer.status = status
        self._closed_at[offer.id] = self.clock()
        self.offers.setdefault(offer.id, offer)
        self.persistence.queue_trade(offer)
