from typing import Annotated

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from flowdesk.core.config import settings

# Users log in against the FlowDB backend; this service only forwards the token
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=settings.TOKEN_URL)


async def get_access_token(token: Annotated[str, Depends(oauth2_scheme)]) -> str:
    # Read-only here: attached to outgoing requests, never refreshed or stored
    return token


token_dep = Annotated[str, Depends(get_access_token)]
