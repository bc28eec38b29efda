"""
Gemini Extractor for PDF invoices.

Uses LangChain + Gemini to turn a PDF attachment into one structured
invoice record. The PDF is sent inline as base64 media; the model is asked
for a single JSON object which is then validated with Pydantic.
"""

import logging
from typing import Any, Optional

from langchain_core.exceptions import OutputParserException
from langchain_core.messages import HumanMessage
from langchain_core.output_parsers import JsonOutputParser
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel, Field, ValidationError, field_validator

from app.exceptions import ExtractionError
from app.services.mail_provider import PDF_CONTENT_TYPE

logger = logging.getLogger(__name__)


class InvoiceFields(BaseModel):
    """Pydantic model for structured invoice extraction."""
    invoice_number: Optional[str] = Field(None, description="Invoice number")
    issue_date: Optional[str] = Field(None, description="Issue date in YYYY-MM-DD format")
    due_date: Optional[str] = Field(None, description="Due date in YYYY-MM-DD format")
    supplier_name: Optional[str] = Field(None, description="Supplier company name")
    supplier_tax_id: Optional[str] = Field(None, description="Supplier company ID (ICO), digits only")
    supplier_vat_id: Optional[str] = Field(None, description="Supplier VAT ID (DIC)")
    total_amount: Optional[float] = Field(None, description="Total amount including VAT, as a number")
    amount_without_tax: Optional[float] = Field(None, description="Amount without VAT, as a number")
    tax_amount: Optional[float] = Field(None, description="VAT amount, as a number")
    payment_reference: Optional[str] = Field(None, description="Payment reference / variable symbol")
    currency: Optional[str] = Field(None, description="Currency code like CZK or EUR")
    bank_account: Optional[str] = Field(None, description="Supplier bank account number")

    @field_validator("total_amount", "amount_without_tax", "tax_amount", mode="before")
    @classmethod
    def _normalize_amount(cls, value: Any) -> Any:
        # "1 234,50" -> "1234.50"
        if isinstance(value, str):
            cleaned = value.replace(" ", "").replace("\u00a0", "").replace(",", ".")
            return cleaned or None
        return value

    @field_validator(
        "invoice_number", "issue_date", "due_date", "supplier_name", "supplier_tax_id",
        "supplier_vat_id", "payment_reference", "currency", "bank_account",
        mode="before"
    )
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        # Models sometimes return numbers for IDs and references
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


EXTRACTION_PROMPT = """You are an expert at extracting structured data from invoices.
Analyze the attached invoice document and extract the fields below.
Use null for any field that is not present on the invoice.
Return ONLY a single valid JSON object, with no text before or after it.
{format_instructions}"""


class InvoiceExtractor:
    """Client for invoice extraction with Gemini."""

    def __init__(
        self,
        api_key: Optional[str],
        model_name: str = "gemini-2.5-flash",
        llm: Optional[Any] = None
    ):
        """Initialize extractor.

        Args:
            api_key: Gemini API key
            model_name: Gemini model to use
            llm: Pre-built chat model, used instead of creating one
        """
        self.api_key = api_key
        self.model_name = model_name
        self._llm = llm
        self._parser = JsonOutputParser(pydantic_object=InvoiceFields)

    def _get_llm(self) -> ChatGoogleGenerativeAI:
        """Get configured Gemini LLM instance."""
        if self._llm is None:
            if not self.api_key:
                raise ExtractionError("GEMINI_API_KEY not configured")
            self._llm = ChatGoogleGenerativeAI(
                model=self.model_name,
                google_api_key=self.api_key,
                temperature=0.1,
            )
        return self._llm

    def extract(self, pdf_base64: str) -> InvoiceFields:
        """
        Extract invoice fields from a PDF.

        Args:
            pdf_base64: PDF content as standard base64

        Returns:
            InvoiceFields: Extracted fields (None for missing)

        Raises:
            ExtractionError: If the model call fails or its output is not a
                single JSON object matching the schema
        """
        message = HumanMessage(content=[
            {
                "type": "text",
                "text": EXTRACTION_PROMPT.format(
                    format_instructions=self._parser.get_format_instructions()
                ),
            },
            {
                "type": "media",
                "mime_type": PDF_CONTENT_TYPE,
                "data": pdf_base64,
            },
        ])

        try:
            response = self._get_llm().invoke([message])
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"Gemini error: {e}") from e

        return self.parse_response(response)

    def parse_response(self, response: Any) -> InvoiceFields:
        """Parse the model reply (message or raw text) into InvoiceFields."""
        try:
            if isinstance(response, str):
                data = self._parser.parse(response)
            else:
                data = self._parser.invoke(response)
        except OutputParserException as e:
            raise ExtractionError(f"Model returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ExtractionError(f"Expected a JSON object, got {type(data).__name__}")

        try:
            fields = InvoiceFields.model_validate(data)
        except ValidationError as e:
            raise ExtractionError(f"Model output does not match invoice schema: {e}") from e

        logger.info("Extracted invoice %s from %s", fields.invoice_number, fields.supplier_name)
        return fields
