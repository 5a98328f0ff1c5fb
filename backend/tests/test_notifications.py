"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Notifications Tests                                               ║
║                                                                              ║
║  - une notification par utilisateur distinct                                 ║
║  - lecture / archivage limités au propriétaire                               ║
║  - nettoyage des anciennes notifications                                     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from datetime import datetime, timedelta, timezone

import pytest

from config import db
from services import notifications
from services.errors import NotFound, ValidationFailed


def _ago(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


class TestCreate:
    @pytest.mark.asyncio
    async def test_batch_dedupes_users(self, acme):
        a, b = acme["member"], acme["loner"]
        count = await notifications.create_batch([a["id"], b["id"], a["id"]], acme["tenant"]["id"], "Hi", "Hello")
        assert count == 2
        assert await notifications.unread_count(a) == 1

    @pytest.mark.asyncio
    async def test_invalid_type(self, acme):
        with pytest.raises(ValidationFailed):
            await notifications.create_notification(acme["member"]["id"], None, "t", "m", type="spam")
        with pytest.raises(ValidationFailed):
            await notifications.create_notification(acme["member"]["id"], None, "t", "m", priority="meh")

    @pytest.mark.asyncio
    async def test_urgent_action_without_assignee_goes_to_admins(self, acme, no_email):
        action = {"id": "a1", "tenant": acme["tenant"]["id"], "title": "Complaint", "priority": "high",
                  "assignedTo": None, "metadata": {"surveyId": "s1"}}
        recipients = await notifications.notify_urgent_action(action)
        assert recipients == [acme["company_admin"]["id"]]
        assert no_email == [([acme["company_admin"]["id"]], "a1")]

    @pytest.mark.asyncio
    async def test_urgent_action_to_assignee(self, acme, no_email):
        action = {"id": "a2", "tenant": acme["tenant"]["id"], "title": "Complaint", "priority": "high",
                  "assignedTo": acme["member"]["id"]}
        assert await notifications.notify_urgent_action(action, send_email=False) == [acme["member"]["id"]]
        assert no_email == []


class TestUserOperations:
    """Seul le destinataire agit sur ses notifications"""

    @pytest.mark.asyncio
    async def test_read_archive_delete(self, acme):
        member, loner = acme["member"], acme["loner"]
        note = await notifications.create_notification(member["id"], acme["tenant"]["id"], "Hi", "Hello")

        with pytest.raises(NotFound):
            await notifications.mark_read(loner, note["id"])

        assert (await notifications.mark_read(member, note["id"]))["status"] == "read"
        assert await notifications.unread_count(member) == 0

        await notifications.archive(member, note["id"])
        assert (await notifications.list_notifications(member))["total"] == 0
        assert (await notifications.list_notifications(member, status="archived"))["total"] == 1

        await notifications.delete_notification(member, note["id"])
        with pytest.raises(NotFound):
            await notifications.delete_notification(member, note["id"])

    @pytest.mark.asyncio
    async def test_mark_all_read_and_expiry(self, acme):
        member = acme["member"]
        tenant = acme["tenant"]["id"]
        await notifications.create_notification(member["id"], tenant, "one", "m")
        await notifications.create_notification(member["id"], tenant, "two", "m")
        await notifications.create_notification(member["id"], tenant, "gone", "m", expires_at=_ago(1))

        listing = await notifications.list_notifications(member)
        assert {n["title"] for n in listing["notifications"]} == {"one", "two"}
        assert await notifications.mark_all_read(member) == 3
        assert await notifications.unread_count(member) == 0

    @pytest.mark.asyncio
    async def test_cleanup(self, acme):
        member = acme["member"]
        old_read = await notifications.create_notification(member["id"], None, "old", "m")
        await db.notifications.update_one({"id": old_read["id"]}, {"$set": {"status": "read", "createdAt": _ago(120)}})
        old_unread = await notifications.create_notification(member["id"], None, "old unread", "m")
        await db.notifications.update_one({"id": old_unread["id"]}, {"$set": {"createdAt": _ago(120)}})
        await notifications.create_notification(member["id"], None, "expired", "m", expires_at=_ago(1))
        await notifications.create_notification(member["id"], None, "fresh", "m")

        assert await notifications.cleanup_old_notifications() == 2
        remaining = {n["title"] for n in await db.notifications.find({}, {"_id": 0}).to_list(10)}
        assert remaining == {"old unread", "fresh"}
