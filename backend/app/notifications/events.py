"""Builders turning school content (announcements, posts, grades) into notification events."""
from datetime import datetime
from typing import Optional

from app.notifications.schemas import NotificationEvent


def event_for_announcement(
    announcement_id,
    title: str,
    message: str,
    priority: str = "medium",
    created_by: Optional[str] = None,
    created_by_type: Optional[str] = None,
    created_by_name: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> NotificationEvent:
    announcement_id = str(announcement_id)
    extra = {"created_at": created_at} if created_at else {}
    return NotificationEvent(
        id=announcement_id,
        type="announcement",
        title=title,
        body=message,
        priority=priority,
        created_by=created_by,
        created_by_type=created_by_type,
        created_by_name=created_by_name,
        action_url=f"announcement://{announcement_id}",
        data={"announcementId": announcement_id},
        **extra,
    )


def event_for_post(
    post_id,
    content: str,
    created_by: Optional[str] = None,
    created_by_name: Optional[str] = None,
) -> NotificationEvent:
    post_id = str(post_id)
    return NotificationEvent(
        id=post_id,
        type="post",
        title="Notification from Admin",
        body=content,
        priority="medium",
        created_by=created_by,
        created_by_type="Admin",
        created_by_name=created_by_name,
        action_url=f"post://{post_id}",
        data={"postId": post_id, "type": "school_post"},
    )


def event_for_grade_update(
    grade_id,
    subject: str,
    exam_name: Optional[str] = None,
    created_by: Optional[str] = None,
    created_by_name: Optional[str] = None,
) -> NotificationEvent:
    grade_id = str(grade_id)
    what = f"{subject} ({exam_name})" if exam_name else subject
    return NotificationEvent(
        id=grade_id,
        type="grade",
        title="Grade updated",
        body=f"Your grade for {what} has been updated.",
        priority="high",
        created_by=created_by,
        created_by_type="Teacher",
        created_by_name=created_by_name,
        action_url=f"grade://{grade_id}",
        data={"gradeId": grade_id, "subject": subject},
    )
