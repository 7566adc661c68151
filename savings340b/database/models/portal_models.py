# savings340b/database/models/portal_models.py
"""
SQLAlchemy ORM models for the 340B savings portal database.
Entities (hospitals, pharmacies) are keyed by PID; every metrics and
qualification table is unique on (entity, quarter, year) so repeated
uploads for a period overwrite instead of duplicating.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index, Numeric
)
from sqlalchemy.orm import declarative_base, relationship
import datetime

Base = declarative_base()

# Float-valued numerics so aggregation code never sees Decimal
MONEY = Numeric(18, 2, asdecimal=False)
PERCENT = Numeric(9, 4, asdecimal=False)

UPLOAD_STATUSES = ('pending', 'approved', 'rejected')


class User(Base):
    """ users table: identity-provider subject plus application role """
    __tablename__ = 'users'

    id = Column(String(64), primary_key=True)
    email = Column(String(255))
    role = Column(String(32), nullable=False, default='viewer')
    created_date = Column(DateTime, default=datetime.datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class Hospital(Base):
    """ hospitals table """
    __tablename__ = 'hospitals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pid = Column(String(50), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    created_date = Column(DateTime, default=datetime.datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    pharmacies = relationship("Pharmacy", back_populates="hospital")
    quarterly_data = relationship("QuarterlyHospitalData", back_populates="hospital",
                                  cascade="all, delete-orphan", order_by="QuarterlyHospitalData.year")
    qualifications = relationship("HospitalQualification", back_populates="hospital",
                                  cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_hospitals_name', 'name'),
    )


class Pharmacy(Base):
    """ pharmacies table """
    __tablename__ = 'pharmacies'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pid = Column(String(50), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    hospital_id = Column(Integer, ForeignKey('hospitals.id'))
    created_date = Column(DateTime, default=datetime.datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    hospital = relationship("Hospital", back_populates="pharmacies")
    quarterly_data = relationship("QuarterlyPharmacyData", back_populates="pharmacy",
                                  cascade="all, delete-orphan")
    qualifications = relationship("PharmacyQualification", back_populates="pharmacy",
                                  cascade="all, delete-orphan")


class Quarter(Base):
    """ quarters table: the reporting period referenced by exports """
    __tablename__ = 'quarters'

    id = Column(Integer, primary_key=True, autoincrement=True)
    quarter = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    created_date = Column(DateTime, default=datetime.datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('quarter', 'year', name='uq_quarters_quarter_year'),
    )

    @property
    def label(self) -> str:
        return f"Q{self.quarter} {self.year}"


class QuarterlyHospitalData(Base):
    """ quarterly_hospital_data table """
    __tablename__ = 'quarterly_hospital_data'

    id = Column(Integer, primary_key=True, autoincrement=True)
    hospital_id = Column(Integer, ForeignKey('hospitals.id', ondelete='CASCADE'), nullable=False)
    quarter = Column(String(10), nullable=False)  # raw token as uploaded, e.g. "Q1"
    year = Column(Integer, nullable=False)
    quarter_id = Column(Integer, ForeignKey('quarters.id'))
    savings = Column(MONEY, nullable=False, default=0)
    drug_spend = Column(MONEY, nullable=False, default=0)
    savings_to_spend_percent = Column(PERCENT, nullable=False, default=0)
    eligible_percent = Column(PERCENT, nullable=False, default=0)
    medicaid_percent = Column(PERCENT, nullable=False, default=0)
    macro_savings = Column(MONEY, nullable=False, default=0)
    created_date = Column(DateTime, default=datetime.datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    hospital = relationship("Hospital", back_populates="quarterly_data")
    period = relationship("Quarter")

    __table_args__ = (
        UniqueConstraint('hospital_id', 'quarter', 'year', name='uq_hospital_data_period'),
        Index('idx_hospital_data_quarter_id', 'quarter_id'),
    )


class HospitalQualification(Base):
    """ hospital_qualifications table """
    __tablename__ = 'hospital_qualifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    hospital_id = Column(Integer, ForeignKey('hospitals.id', ondelete='CASCADE'), nullable=False)
    quarter = Column(String(10), nullable=False)
    year = Column(Integer, nullable=False)
    quarter_id = Column(Integer, ForeignKey('quarters.id'))
    qualified_percent = Column(PERCENT, nullable=False, default=0)
    inpatient_percent = Column(PERCENT, nullable=False, default=0)
    medicaid_percent = Column(PERCENT, nullable=False, default=0)
    orphan_percent = Column(PERCENT, nullable=False, default=0)
    non_340b_drug_percent = Column(PERCENT, nullable=False, default=0)
    drug_exclude_percent = Column(PERCENT, nullable=False, default=0)
    disqualified_percent = Column(PERCENT, nullable=False, default=0)
    created_date = Column(DateTime, default=datetime.datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    hospital = relationship("Hospital", back_populates="qualifications")

    __table_args__ = (
        UniqueConstraint('hospital_id', 'quarter', 'year', name='uq_hospital_qualifications_period'),
    )


class PharmacyQualification(Base):
    """ pharmacy_qualifications table """
    __tablename__ = 'pharmacy_qualifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pharmacy_id = Column(Integer, ForeignKey('pharmacies.id', ondelete='CASCADE'), nullable=False)
    quarter = Column(String(10), nullable=False)
    year = Column(Integer, nullable=False)
    quarter_id = Column(Integer, ForeignKey('quarters.id'))
    qualified_percent = Column(PERCENT, nullable=False, default=0)
    inpatient_percent = Column(PERCENT, nullable=False, default=0)
    medicaid_percent = Column(PERCENT, nullable=False, default=0)
    orphan_percent = Column(PERCENT, nullable=False, default=0)
    non_340b_drug_percent = Column(PERCENT, nullable=False, default=0)
    drug_exclude_percent = Column(PERCENT, nullable=False, default=0)
    disqualified_percent = Column(PERCENT, nullable=False, default=0)
    created_date = Column(DateTime, default=datetime.datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    pharmacy = relationship("Pharmacy", back_populates="qualifications")

    __table_args__ = (
        UniqueConstraint('pharmacy_id', 'quarter', 'year', name='uq_pharmacy_qualifications_period'),
    )


class QuarterlyPharmacyData(Base):
    """ quarterly_pharmacy_data table """
    __tablename__ = 'quarterly_pharmacy_data'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pharmacy_id = Column(Integer, ForeignKey('pharmacies.id', ondelete='CASCADE'), nullable=False)
    quarter = Column(String(10), nullable=False)
    year = Column(Integer, nullable=False)
    quarter_id = Column(Integer, ForeignKey('quarters.id'))
    scripts = Column(Integer, nullable=False, default=0)
    dispensing_fee = Column(MONEY, nullable=False, default=0)
    ce_revenue = Column(MONEY, nullable=False, default=0)
    drug_cost = Column(MONEY, nullable=False, default=0)
    current_profit = Column(MONEY, nullable=False, default=0)
    current_profit_median = Column(MONEY, nullable=False, default=0)
    brand_profit = Column(MONEY, nullable=False, default=0)
    brand_profit_avg = Column(MONEY, nullable=False, default=0)
    generic_profit = Column(MONEY, nullable=False, default=0)
    generic_profit_avg = Column(MONEY, nullable=False, default=0)
    ep_added_340b_benefit = Column(MONEY, nullable=False, default=0)
    ep_340b_bucket_split = Column(PERCENT, nullable=False, default=0)
    created_date = Column(DateTime, default=datetime.datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    pharmacy = relationship("Pharmacy", back_populates="quarterly_data")
    period = relationship("Quarter")

    __table_args__ = (
        UniqueConstraint('pharmacy_id', 'quarter', 'year', name='uq_pharmacy_data_period'),
        Index('idx_pharmacy_data_quarter_id', 'quarter_id'),
    )


class DataUpload(Base):
    """ data_uploads table: one row per ingestion request """
    __tablename__ = 'data_uploads'

    id = Column(Integer, primary_key=True, autoincrement=True)
    uploaded_by = Column(String(64), nullable=False)  # identity-provider subject
    quarter = Column(String(10), nullable=False)
    year = Column(Integer, nullable=False)
    filename = Column(String(255))
    status = Column(String(20), nullable=False, default='pending')  # pending, approved, rejected
    records_processed = Column(Integer, nullable=False, default=0)
    reviewed_by = Column(String(64))
    reviewed_date = Column(DateTime)
    created_date = Column(DateTime, default=datetime.datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    __table_args__ = (
        Index('idx_data_uploads_created', 'created_date'),
    )
