# =============================================================================
# Settings API — Dispute Email Templates
# =============================================================================
#
# ENDPOINTS:
#   GET /settings/email-templates  — the caller's templates, or the defaults
#   PUT /settings/email-templates  — replace all of the caller's templates
#
# Templates are the canned messages staff send to customers who opened a
# dispute (first response, follow-up, final notice). {{firstName}} is
# filled in by the frontend.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispute_center.api.deps import check_scope, get_current_api_key, get_current_user_email
from dispute_center.db.engine import get_async_session
from dispute_center.db.models import ApiKey, EmailTemplate
from dispute_center.models.requests import SaveTemplatesRequest
from dispute_center.models.responses import EmailTemplateResponse, EmailTemplatesResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/settings", tags=["Settings"])

DEFAULT_TEMPLATES: list[dict[str, object]] = [
    {
        "name": "First Response",
        "subject": "Re: Dispute Resolution",
        "body": (
            "Hi {{firstName}},\n\n"
            "I noticed you've opened a dispute for our service. I understand your "
            "concern and I'd like to help resolve this directly.\n\n"
            "Our records show that you've accessed our platform and we'd love to "
            "ensure you get the most value from it. Would you be open to discussing "
            "this before proceeding with the dispute?"
        ),
        "order": 1,
    },
    {
        "name": "Follow Up",
        "subject": "Re: Dispute Follow-up",
        "body": (
            "Hi {{firstName}},\n\n"
            "I'm following up on the dispute you've filed. I noticed we haven't heard "
            "back from you yet, and I'm personally committed to making sure every "
            "customer is satisfied.\n\n"
            "Would you be willing to have a quick discussion about your concerns? "
            "We can also arrange a refund if you'd prefer that option."
        ),
        "order": 2,
    },
    {
        "name": "Final Notice",
        "subject": "Re: Final Notice - Dispute",
        "body": (
            "Hi {{firstName}},\n\n"
            "This is my final attempt to resolve this dispute amicably. As mentioned "
            "before, we have records of your platform usage and are prepared to "
            "provide this evidence if needed.\n\n"
            "However, I'd much prefer to resolve this directly with you. Please let "
            "me know if you'd be open to discussing this or accepting a refund."
        ),
        "order": 3,
    },
]


def _template_response(row: EmailTemplate) -> EmailTemplateResponse:
    return EmailTemplateResponse(
        id=row.id,
        name=row.name,
        subject=row.subject,
        body=row.body,
        order=row.position,
    )


async def _load_templates(session: AsyncSession, user_email: str) -> list[EmailTemplate]:
    result = await session.execute(
        select(EmailTemplate)
        .where(EmailTemplate.user_email == user_email)
        .order_by(EmailTemplate.position, EmailTemplate.id)
    )
    return list(result.scalars().all())


@router.get(
    "/email-templates",
    response_model=EmailTemplatesResponse,
    summary="Get dispute email templates",
)
async def get_templates(
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> EmailTemplatesResponse:
    check_scope(api_key, "settings")
    rows = await _load_templates(session, user_email)
    if not rows:
        return EmailTemplatesResponse(
            templates=[EmailTemplateResponse(**t) for t in DEFAULT_TEMPLATES],
            is_default=True,
        )
    return EmailTemplatesResponse(templates=[_template_response(r) for r in rows])


@router.put(
    "/email-templates",
    response_model=EmailTemplatesResponse,
    summary="Replace dispute email templates",
    description=(
        "Replaces every stored template of the caller. Templates without an "
        "`order` are numbered by their position in the list, starting at 1."
    ),
)
async def save_templates(
    request: SaveTemplatesRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> EmailTemplatesResponse:
    check_scope(api_key, "settings")

    await session.execute(delete(EmailTemplate).where(EmailTemplate.user_email == user_email))
    session.add_all([
        EmailTemplate(
            user_email=user_email,
            name=template.name,
            subject=template.subject,
            body=template.body,
            position=template.order if template.order is not None else index + 1,
        )
        for index, template in enumerate(request.templates)
    ])
    await session.commit()

    rows = await _load_templates(session, user_email)
    logger.info("Saved %d email templates for %s", len(rows), user_email)
    return EmailTemplatesResponse(templates=[_template_response(r) for r in rows])
