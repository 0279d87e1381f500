"""
HTTP routes for managing article references.
"""

from __future__ import annotations

import json
import logging
import unicodedata
from urllib.parse import quote

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from reference_admin.config import get_settings
from reference_admin.db import ArticleReferenceRow, ArticleRow, ReferenceRepository
from reference_admin.dependencies import (
    get_article,
    get_reference,
    get_repository,
    get_storage_client,
    get_uploader,
)
from reference_admin.errors import ReferenceValidationError, violations_from_pydantic
from reference_admin.schemas import ReferenceResponse, ReferenceUpdate, ViolationResponse
from reference_admin.security import Actor, ensure_can_manage, get_current_actor
from reference_admin.storage import ReferenceUploader, StorageClient
from reference_admin.uploads import (
    parse_json_source,
    read_multipart_source,
    resolve,
    validate_upload,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _is_json(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";", 1)[0].strip().lower() == "application/json"


async def _json_body(request: Request):
    try:
        return json.loads(await request.body())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid body")


def _parent_article(
    reference: ArticleReferenceRow, repository: ReferenceRepository
) -> ArticleRow:
    article = repository.get_article(reference.article_id)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


def _attachment_disposition(filename: str) -> str:
    """Build an attachment Content-Disposition with an ASCII fallback name."""
    fallback = (
        unicodedata.normalize("NFKD", filename)
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    fallback = "".join(
        "_" if ch in '"\\/%' or not ch.isprintable() else ch for ch in fallback
    ).strip() or "download"
    disposition = f'attachment; filename="{fallback}"'
    if fallback != filename:
        disposition += f"; filename*=utf-8''{quote(filename, safe='')}"
    return disposition


@router.post(
    "/admin/article/{id}/references",
    response_model=ReferenceResponse,
    status_code=201,
    responses={400: {"model": ViolationResponse}},
)
async def upload_article_reference(
    request: Request,
    article: ArticleRow = Depends(get_article),
    actor: Actor = Depends(get_current_actor),
    repository: ReferenceRepository = Depends(get_repository),
    uploader: ReferenceUploader = Depends(get_uploader),
):
    ensure_can_manage(article, actor)
    settings = get_settings()

    if _is_json(request):
        source = parse_json_source(await request.body())
    else:
        form = await request.form()
        source = await read_multipart_source(
            form.get("reference"), max_bytes=settings.max_upload_bytes
        )

    upload = resolve(source, max_bytes=settings.max_upload_bytes)
    violations = validate_upload(upload, max_bytes=settings.max_upload_bytes)
    if violations:
        raise ReferenceValidationError(violations)

    filename = uploader.store(upload.data, upload.filename, upload.mime_type)
    reference = repository.add_reference(
        article,
        filename=filename,
        original_filename=upload.filename or filename,
        mime_type=upload.mime_type,
    )
    try:
        repository.session.commit()
    except SQLAlchemyError:
        logger.warning(
            "Could not save reference for article %s; stored file %s is orphaned",
            article.id,
            filename,
        )
        raise

    logger.info("Article %s: added reference %s (%s)", article.id, reference.id, filename)
    return ReferenceResponse.model_validate(reference)


@router.get(
    "/admin/article/{id}/references", response_model=list[ReferenceResponse]
)
def list_article_references(
    article: ArticleRow = Depends(get_article),
    actor: Actor = Depends(get_current_actor),
    repository: ReferenceRepository = Depends(get_repository),
):
    ensure_can_manage(article, actor)
    return [
        ReferenceResponse.model_validate(reference)
        for reference in repository.list_references(article.id)
    ]


@router.post(
    "/admin/article/{id}/references/reorder",
    response_model=list[ReferenceResponse],
)
async def reorder_article_references(
    request: Request,
    article: ArticleRow = Depends(get_article),
    actor: Actor = Depends(get_current_actor),
    repository: ReferenceRepository = Depends(get_repository),
):
    """
    The body is a JSON array of reference ids; the index of each id is its
    new position. The ids must be exactly the article's current references.
    """
    ensure_can_manage(article, actor)

    ordered_ids = await _json_body(request)
    if not isinstance(ordered_ids, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in ordered_ids
    ):
        raise HTTPException(status_code=400, detail="Invalid body")

    # from position => id to id => position
    positions = {reference_id: index for index, reference_id in enumerate(ordered_ids)}
    if len(positions) != len(ordered_ids):
        raise HTTPException(status_code=400, detail="Duplicate reference ids")

    references = repository.list_references(article.id)
    current_ids = {reference.id for reference in references}
    missing = sorted(current_ids - positions.keys())
    unknown = sorted(positions.keys() - current_ids)
    if missing or unknown:
        logger.warning(
            "Article %s: rejected reorder (missing=%s, unknown=%s)",
            article.id,
            missing,
            unknown,
        )
        raise HTTPException(
            status_code=400,
            detail=(
                "Reference ids must match the article's references "
                f"(missing: {missing}, unknown: {unknown})"
            ),
        )

    for reference in references:
        reference.position = positions[reference.id]
    repository.session.commit()

    logger.info("Article %s: reordered %d references", article.id, len(references))
    return [
        ReferenceResponse.model_validate(reference)
        for reference in repository.list_references(article.id)
    ]


@router.get("/admin/article/references/{id}/download")
def download_article_reference(
    reference: ArticleReferenceRow = Depends(get_reference),
    actor: Actor = Depends(get_current_actor),
    repository: ReferenceRepository = Depends(get_repository),
    storage: StorageClient = Depends(get_storage_client),
    uploader: ReferenceUploader = Depends(get_uploader),
):
    ensure_can_manage(_parent_article(reference, repository), actor)

    url = storage.presign_get(
        uploader.path_for(reference.filename),
        expires_in=get_settings().download_url_ttl_seconds,
        response_content_type=reference.mime_type,
        response_content_disposition=_attachment_disposition(
            reference.original_filename
        ),
    )
    return RedirectResponse(url, status_code=302)


@router.delete("/admin/article/references/{id}", status_code=204)
def delete_article_reference(
    reference: ArticleReferenceRow = Depends(get_reference),
    actor: Actor = Depends(get_current_actor),
    repository: ReferenceRepository = Depends(get_repository),
    uploader: ReferenceUploader = Depends(get_uploader),
):
    ensure_can_manage(_parent_article(reference, repository), actor)

    filename = reference.filename
    repository.remove_reference(reference)
    repository.session.commit()

    try:
        uploader.delete(filename)
    except (BotoCoreError, ClientError):
        logger.exception(
            "Reference %s deleted but stored file %s could not be removed",
            reference.id,
            filename,
        )
        raise

    return Response(status_code=204)


@router.put(
    "/admin/article/references/{id}",
    response_model=ReferenceResponse,
    responses={400: {"model": ViolationResponse}},
)
async def update_article_reference(
    request: Request,
    reference: ArticleReferenceRow = Depends(get_reference),
    actor: Actor = Depends(get_current_actor),
    repository: ReferenceRepository = Depends(get_repository),
):
    ensure_can_manage(_parent_article(reference, repository), actor)

    payload = await _json_body(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid body")
    try:
        changes = ReferenceUpdate.model_validate(payload)
    except ValidationError as exc:
        raise ReferenceValidationError(violations_from_pydantic(exc))

    for field_name, value in changes.model_dump(exclude_unset=True).items():
        setattr(reference, field_name, value)

    violations = reference.validate()
    if violations:
        repository.session.rollback()
        raise ReferenceValidationError(violations)

    repository.session.commit()
    return ReferenceResponse.model_validate(reference)
