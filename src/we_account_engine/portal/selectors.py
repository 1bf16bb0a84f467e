from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalSelectors:
    """
    The WE portal (my.te.eg) is an Angular + ant-design SPA; selectors may change over time.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Sign-in form
    service_number_input: str = 'input[placeholder*="Service"]'
    service_type_trigger: str = ".ant-select-selector"
    service_type_selected: str = ".ant-select-selection-item"
    service_type_dropdown: str = ".ant-select-dropdown:visible"
    service_type_option: str = ".ant-select-item-option-content"
    service_type_active_option: str = ".ant-select-item-option-active .ant-select-item-option-content"
    service_type_text: str = "Internet"
    password_input: str = "#login_password_input_01"
    login_button: str = "#login-withecare"

    # Inline errors the form renders after a rejected sign-in.
    login_error_message: str = (
        ".ant-form-item-explain-error, .ant-message-error, "
        ".ant-notification-notice-description, .ant-alert-error"
    )

    # Visible right after a successful sign-in, before the URL settles.
    login_success_texts: tuple[str, ...] = ("Usage Overview", "Home Internet", "Current Balance")

    # Any of these in the body means an authenticated overview has rendered.
    overview_ready_texts: tuple[str, ...] = ("Usage Overview", "Current Balance", "Home Internet", "Remaining")

    # Account overview
    plan_title_spans: str = "span[title]"
    balance_label_text: str = "Current Balance"
    remaining_label_text: str = "Remaining"
    used_label_text: str = "Used"

    # Overview details panel
    # Ordered most specific first; the bare "Details" variants are last-resort matches.
    more_details_texts: tuple[str, ...] = ("More Details", "مزيد من التفاصيل", "Details", "تفاصيل")
    details_ready_text: str = "Renewal Date"
    details_unavailable_texts: tuple[str, ...] = (
        "temporarily unavailable",
        "try again later",
        "غير متاح حاليا",
    )
    renew_button_text: str = "Renew"
