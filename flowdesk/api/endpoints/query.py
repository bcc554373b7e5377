import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from flowdesk.core import schemas
from flowdesk.core.database import get_db
from flowdesk.core.security import token_dep
from flowdesk.core.query import pipeline
from flowdesk.core.query.errors import SubmissionFailed
from flowdesk.core.query.gate import SubmissionGate, build_http_client
from flowdesk.core.query.stream import StreamDecoder

router = APIRouter(prefix="/connections", tags=["Query"])


async def get_submission_gate(token: token_dep):
    async with build_http_client(token) as client:
        yield SubmissionGate(client)


def get_stream_decoder(token: token_dep) -> StreamDecoder:
    return StreamDecoder(access_token=token)


db_dep = Annotated[AsyncSession, Depends(get_db)]
gate_dep = Annotated[SubmissionGate, Depends(get_submission_gate)]
decoder_dep = Annotated[StreamDecoder, Depends(get_stream_decoder)]


@router.post("/{connection_id}/query", response_model=schemas.RunOutcome)
async def run_statement(
    connection_id: str,
    payload: schemas.RunQueryRequest,
    gate: gate_dep,
    decoder: decoder_dep,
    db: db_dep,
):
    """
    Run a statement and return the collected result.

    Every outcome (ok, pending_approval, no_connection, error, rejected)
    is a 200 response; the UI branches on "status".
    """
    submission = schemas.QuerySubmission(
        connection_id=connection_id,
        statement=payload.statement,
        approval_id=payload.approval_id,
        max_rows=payload.max_rows,
        timeout_ms=payload.timeout_ms,
    )

    try:
        return await pipeline.run_query(
            submission, gate=gate, decoder=decoder, db=db
        )
    except SubmissionFailed as error:
        logging.error(f"Query submission for connection {connection_id} failed: {error}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Query submission failed",
        )
