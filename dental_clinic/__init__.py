"""
Dental Clinic backend (multi-tenant).

Layout:
- config.py        : settings from environment variables (.env)
- db.py            : SQLAlchemy engine and sessions
- auth_models.py   : organizations, users, memberships with role
- models.py        : clinical ORM models (patients, treatments, payments, messages, ...)
- teeth.py         : FDI notation and tooth formatting
- pricing.py       : price per tooth, totals and discounts
- permissions.py   : roles and permissions
- auth_security.py : password hashing and JWT
- auth_service.py  : login, organization selection, members
- services.py      : patients, medical history, appointments, treatment types, treatments
- billing.py       : payments, expenses, patient balance, dashboard
- messaging.py     : messages, templates, WhatsApp delivery, resend
- files.py         : attachments on local disk
- seed.py          : initial data (teeth catalog, demo clinic)
- api_main.py      : REST API (FastAPI)
- cli.py           : command line operations
"""
