from __future__ import annotations

from relayq.services.templates import (
    DEFAULT_TEMPLATES,
    extract_variables,
    get_default_template,
    preview_template,
    substitute_variables,
    validate_variables,
)


def test_substitute_variables_keeps_unresolved_placeholders() -> None:
    content = "Hi {{name}}, order #{{orderNumber}} ships {{when}}"
    rendered = substitute_variables(content, {"name": "Ada", "orderNumber": 42})
    assert rendered == "Hi Ada, order #42 ships {{when}}"


def test_extract_and_validate_variables() -> None:
    content = "{{brandName}}: code {{code}} for {{brandName}}"
    assert extract_variables(content) == ["brandName", "code"]

    check = validate_variables(content, {"brandName": "Acme"})
    assert check.valid is False
    assert check.missing == ["code"]
    assert validate_variables(content, {"brandName": "Acme", "code": "1"}).valid is True


def test_every_default_template_declares_its_placeholders() -> None:
    for channel, templates in DEFAULT_TEMPLATES.items():
        for notification_type, template in templates.items():
            assert set(extract_variables(template.content)) == set(template.available_variables), (
                channel,
                notification_type,
            )


def test_sms_defaults_fit_a_single_segment_with_sample_data() -> None:
    for notification_type, template in DEFAULT_TEMPLATES["sms"].items():
        rendered = preview_template(template.content, notification_type)
        assert extract_variables(rendered.content) == [], notification_type
        assert rendered.encoding == "GSM-7"
        assert rendered.segment_count == 1, notification_type


def test_preview_custom_variables_override_samples() -> None:
    template = get_default_template("verification_code")
    assert template is not None
    rendered = preview_template(template.content, "verification_code", {"code": "999999"})
    assert "999999" in rendered.content
    assert "Acme" in rendered.content
    assert rendered.length == len(rendered.content)


def test_email_preview_reports_single_part() -> None:
    long_body = "x" * 5000
    rendered = preview_template(long_body, "order_shipped", channel="email")
    assert rendered.segment_count == 1
    assert rendered.encoding == "UTF-8"


def test_unknown_default_template() -> None:
    assert get_default_template("does_not_exist") is None
    assert get_default_template("order_shipped", "email") is not None
