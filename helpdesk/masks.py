"""Input masks for Brazilian phone numbers and CNPJ tax identifiers."""
import re

PHONE_TEMPLATE = '(##) #####-####'
CNPJ_TEMPLATE = '##.###.###/####-##'
PHONE_MAX_DIGITS = PHONE_TEMPLATE.count('#')
CNPJ_MAX_DIGITS = CNPJ_TEMPLATE.count('#')

PHONE_PATTERN = re.compile(r'^\([1-9]{2}\) 9[1-9]\d{3}-\d{4}$')
CNPJ_PATTERN = re.compile(r'^\d{2}\.\d{3}\.\d{3}/\d{4}-\d{2}$')
_NON_DIGIT_RE = re.compile(r'\D+')


def only_digits(value):
    return _NON_DIGIT_RE.sub('', str(value or ''))


def apply_mask(digits, template):
    """Fill ``template`` ('#' = digit slot) and stop right after the last digit.

    Separators are only emitted when a digit follows them, so the result for a
    partial input is always a prefix of the result for any longer input.
    """
    output = []
    position = 0
    for slot in template:
        if position >= len(digits):
            break
        if slot == '#':
            output.append(digits[position])
            position += 1
        else:
            output.append(slot)
    return ''.join(output)


def normalize_phone_number(value):
    return apply_mask(only_digits(value)[:PHONE_MAX_DIGITS], PHONE_TEMPLATE)


def normalize_cnpj(value):
    return apply_mask(only_digits(value)[:CNPJ_MAX_DIGITS], CNPJ_TEMPLATE)


def is_valid_phone(value):
    return bool(PHONE_PATTERN.match(value or ''))


def is_valid_cnpj(value):
    return bool(CNPJ_PATTERN.match(value or ''))


MASKS = {
    'phone': normalize_phone_number,
    'cnpj': normalize_cnpj,
}
