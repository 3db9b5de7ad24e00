"""Seller-facing error codes with English and Chichewa messages.

Row errors store a stable code; correction files and previews render the
localized text from this table.
"""
from typing import Literal

Language = Literal["en", "ny"]

MISSING_PRODUCT_NAME = "MISSING_PRODUCT_NAME"
MISSING_PRICE = "MISSING_PRICE"
INVALID_PRICE = "INVALID_PRICE"
INVALID_STOCK = "INVALID_STOCK"
INVALID_CONDITION = "INVALID_CONDITION"
INVALID_IMAGE_URL = "INVALID_IMAGE_URL"
TOO_MANY_IMAGES = "TOO_MANY_IMAGES"
DUPLICATE_IN_BATCH = "DUPLICATE_IN_BATCH"
DUPLICATE_PRODUCT = "DUPLICATE_PRODUCT"
DUPLICATE_SKU = "DUPLICATE_SKU"
AMBIGUOUS_MATCH = "AMBIGUOUS_MATCH"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

ERROR_MESSAGES: dict[str, dict[str, str]] = {
    MISSING_PRODUCT_NAME: {
        "en": "Product name is required",
        "ny": "Dzina la katundu ndilofunikira",
    },
    MISSING_PRICE: {
        "en": "Base price is required",
        "ny": "Mtengo woyambira ndi wofunikira",
    },
    INVALID_PRICE: {
        "en": "Price must be a positive number",
        "ny": "Mtengo uyenera kukhala nambala yabwino",
    },
    INVALID_STOCK: {
        "en": "Stock quantity must be a non-negative whole number",
        "ny": "Kuchuluka kwa katundu kuyenera kukhala nambala yosachepera zero",
    },
    INVALID_CONDITION: {
        "en": "Invalid product condition",
        "ny": "Mkhalidwe wa katundu ndi wolakwika",
    },
    INVALID_IMAGE_URL: {
        "en": "Image URL is invalid",
        "ny": "URL ya chithunzi ndi yolakwika",
    },
    TOO_MANY_IMAGES: {
        "en": "A listing can have at most 10 images",
        "ny": "Katundu mmodzi akhoza kukhala ndi zithunzi 10 zokha",
    },
    DUPLICATE_IN_BATCH: {
        "en": "This product appears more than once in the upload",
        "ny": "Katundu ameneyu walembedwa kangapo mu fayilo",
    },
    DUPLICATE_PRODUCT: {
        "en": "This product already exists in your shop",
        "ny": "Katundu ameneyu alipo kale m'sitolo yanu",
    },
    DUPLICATE_SKU: {
        "en": "This SKU already exists in your shop",
        "ny": "SKU imeneyi ilipo kale m'sitolo yanu",
    },
    AMBIGUOUS_MATCH: {
        "en": "Several catalog products match this name; choose one before committing",
        "ny": "Katundu ambiri akufanana ndi dzina ili; sankhani umodzi",
    },
    UNKNOWN_ERROR: {
        "en": "Unknown error",
        "ny": "Vuto losadziwika",
    },
}


def localize(code: str, language: Language = "en") -> str:
    """Return the message for ``code`` in ``language``."""
    messages = ERROR_MESSAGES.get(code, ERROR_MESSAGES[UNKNOWN_ERROR])
    return messages[language]
