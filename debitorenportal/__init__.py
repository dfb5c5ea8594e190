"""Debitorenportal - Dunning Core.

Statutory interest, overdue invoice projection and merge-field email
rendering for German receivables dunning (Zahlungserinnerung through
Letzte Mahnung).
"""

from .context_builder import EmailContext, build_context
from .dunning_service import DunningPreview, DunningService, summarize_receivables
from .interest import calculate_interest, resolve_rate
from .models import (
    CompanySettings,
    Customer,
    CustomerType,
    DunningRules,
    DunningStage,
    DunningTemplate,
    OverdueInvoice,
    Receipt,
    RenderedEmail,
    StageRule,
)
from .overdue import project_overdue_invoices
from .stage_classifier import determine_dunning_level, stage_name
from .template_engine import HelperRegistry, TemplateEngine, TemplateError

__version__ = "0.1.0"

__all__ = [
    "CompanySettings",
    "Customer",
    "CustomerType",
    "DunningPreview",
    "DunningRules",
    "DunningService",
    "DunningStage",
    "DunningTemplate",
    "EmailContext",
    "HelperRegistry",
    "OverdueInvoice",
    "Receipt",
    "RenderedEmail",
    "StageRule",
    "TemplateEngine",
    "TemplateError",
    "build_context",
    "calculate_interest",
    "determine_dunning_level",
    "project_overdue_invoices",
    "resolve_rate",
    "stage_name",
    "summarize_receivables",
]
