from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.tax import TaxRate


class TaxRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_country(self, country_code: str) -> TaxRate | None:
        return (
            self.db.query(TaxRate).filter(TaxRate.country_code == country_code.upper()).first()
        )

    def get_all(self) -> list[TaxRate]:
        return self.db.query(TaxRate).order_by(TaxRate.country_code).all()

    def upsert(self, country_code: str, name: str, rate: Decimal) -> TaxRate:
        tax_rate = self.get_by_country(country_code)
        if tax_rate is None:
            tax_rate = TaxRate(country_code=country_code.upper(), name=name, rate=rate)
            self.db.add(tax_rate)
        else:
            tax_rate.name = name  # type: ignore[assignment]
            tax_rate.rate = rate  # type: ignore[assignment]
        self.db.flush()
        return tax_rate
