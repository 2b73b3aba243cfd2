from pydantic import BaseModel, ConfigDict


class PatientDemographics(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    full_name: str = ""
    first_name: str = ""
    last_name: str = ""
    gender: str = ""
    birth_date: str | None = None
    age: int | None = None
    mrn: str = ""
    phone: str | None = None
    address: str | None = None
