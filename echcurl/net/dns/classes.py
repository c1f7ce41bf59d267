IN = 1
CH = 3
HS = 4
ANY = 255

_STRINGS = {IN: "IN", CH: "CH", HS: "HS", ANY: "ANY"}


def to_str(class_: int) -> str:
    return _STRINGS.get(class_, f"CLASS({class_})")
