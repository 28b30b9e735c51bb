"""``GenerateInvoiceHtml`` command: render an invoice template to HTML.

Templates use ``$placeholder`` substitution (``string.Template``) over the
invoice fields; unknown placeholders are left in place.
"""

from __future__ import annotations

from string import Template

from pydantic import BaseModel, Field

from invoicing_runtime.cqrs.command import Command, CommandHandler

_PAGE = """<!DOCTYPE html>
<html lang="en" style="width: 210mm; height: 295mm; padding: 0; margin: 0;">
  <head><meta charset="UTF-8" /></head>
  <style>$styles</style>
  <body style="width: 210mm; height: 295mm; padding: 0; margin: 0;">$body</body>
</html>"""


class InvoiceLine(BaseModel):
    description: str
    quantity: float = 1
    unit_price_cents: int = 0


class InvoiceHtmlRequest(BaseModel):
    template: str
    styles: str = ""
    logo_url: str = ""
    no_wrap: bool = False
    invoice_number: str
    customer_name: str
    currency: str = "EUR"
    lines: list[InvoiceLine] = Field(default_factory=list)


class InvoiceHtmlResponse(BaseModel):
    html: str


class GenerateInvoiceHtml(Command[InvoiceHtmlRequest, InvoiceHtmlResponse]):
    pass


def cents_to_price(cents: int, currency: str = "EUR") -> str:
    return f"{cents / 100:.2f} {currency}"


class GenerateInvoiceHtmlHandler(CommandHandler[InvoiceHtmlRequest, InvoiceHtmlResponse]):

    async def execute(self, request: InvoiceHtmlRequest) -> InvoiceHtmlResponse:
        total = sum(round(line.quantity * line.unit_price_cents) for line in request.lines)
        body = Template(request.template).safe_substitute(
            number=request.invoice_number,
            name=request.customer_name,
            logo=request.logo_url,
            total=cents_to_price(total, request.currency),
        )
        if request.no_wrap:
            return InvoiceHtmlResponse(html=body)
        html = Template(_PAGE).substitute(styles=request.styles, body=body)
        return InvoiceHtmlResponse(html=html)
