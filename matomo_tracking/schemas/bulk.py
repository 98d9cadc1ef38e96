from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class BulkPayload(BaseModel):
    requests: List[str]
    token_auth: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "requests": [
                    "?idsite=1&rec=1&apiv=1&pv_id=a1b2c3&action_name=Home",
                    "?idsite=1&rec=1&apiv=1&pv_id=a1b2c3&e_c=Videos&e_a=Play",
                ],
                "token_auth": "0123456789abcdef0123456789abcdef",
            }
        }
    )

    def to_body(self) -> dict:
        return self.model_dump(exclude_none=True)
