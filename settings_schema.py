from pydantic import BaseModel, Field, ValidationError


class SettingsSchema(BaseModel):
    remote_url: str = "http://localhost:54321"
    remote_api_key: str = ""
    access_token: str = ""
    db_path: str = "fitflow.db"
    sync_interval: float = Field(default=60.0, gt=0)
    probe_interval: float = Field(default=15.0, gt=0)
    request_timeout: float = Field(default=10.0, gt=0)
    log_level: str = "INFO"


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
