import pytest

from fcasm import asm


def parse(*lines):
    return [asm.parse_instruction(asm.lex_tokens(line)) for line in lines]


def test_resolve_instructions():
    items = parse(
        'start:',
        'mov r0, r1',
        'jmpa start',
        '.strs "abc"',
        'ret',
    )
    resolved = asm.resolve_instructions(items)
    assert [item.address for item in resolved] == [0, 0, 2, 7, 10]
    assert [item.size for item in resolved] == [0, 2, 5, 3, 1]
    assert [item.encoding for item in resolved] == [
        None,
        asm.OPCODES['mov'][0],
        asm.OPCODES['jmpa'][0],
        asm.DIRECTIVES['.strs'],
        asm.OPCODES['ret'][0],
    ]


def test_resolve_instructions_addresses_are_contiguous():
    items = parse(
        'mov r0, 0x20',
        '.skip 3',
        'str [r1 + 2], r0',
        '.origin 0x20',
        'call r1',
    )
    resolved = asm.resolve_instructions(items)
    assert resolved[0].address == 0
    for prev, curr in zip(resolved, resolved[1:]):
        assert curr.address == prev.address + prev.size
    assert resolved[-1].address == 0x20


@pytest.mark.parametrize(
    'line,           size', [
    ('.origin 0',    0),
    ('.skip 0',      0),
    ('.skip 12',     12),
    ('.strd 1',      4),
    ('.strb 1',      1),
    ('.strs ""',     0),
    ('.strs "a\\n"', 2),
])
def test_directive_size(line, size):
    item = asm.parse_instruction(asm.lex_tokens(line))
    assert asm.directive_size(item, 0) == size


def test_resolve_labels():
    resolved = asm.resolve_instructions(parse(
        'ret',
        'data:',
        '.strd 5',
        'jmpa data',
    ))
    labels = {}
    new_items = asm.resolve_labels(resolved, labels)
    assert labels == {'data': 1}

    operand = new_items[3].instr.operands[0]
    assert isinstance(operand, asm.Number)
    assert operand.value == 1
    assert operand.span == resolved[3].instr.operands[0].span

    # the input list is left untouched
    assert isinstance(resolved[3].instr.operands[0], asm.Identifier)


def test_resolve_labels_inside_memory():
    resolved = asm.resolve_instructions(parse(
        'ldr r0, [data]',
        'data: .strd 0',
    ))
    new_items = asm.resolve_labels(resolved, {})
    operand = new_items[0].instr.operands[1]
    assert isinstance(operand, asm.MemoryNoMath)
    assert isinstance(operand.inner, asm.Number)
    assert operand.inner.value == 6


def test_resolve_labels_program_overrides_external():
    resolved = asm.resolve_instructions(parse('start: jmpa start'))
    labels = {'start': 99, 'other': 7}
    new_items = asm.resolve_labels(resolved, labels)
    assert labels == {'start': 0, 'other': 7}
    assert new_items[0].instr.operands[0].value == 0


def test_resolve_labels_leaves_no_identifiers():
    resolved = asm.resolve_instructions(parse(
        'a: mov r0, b',
        'b: call a',
        'jmpr a',
    ))
    for item in asm.resolve_labels(resolved, {}):
        for operand in item.instr.operands:
            assert not isinstance(operand, asm.Identifier)


def test_validate_encodings():
    resolved = asm.resolve_instructions(parse(
        'jmpr far',
        '.skip 0x100',
        'far: halt',
    ))
    items = asm.resolve_labels(resolved, {})
    with pytest.raises(asm.AssemblerError) as e:
        asm.validate_encodings(items)
    assert e.value.message == 'value 258 does not fit in imm8'
    assert e.value.span == (6, 8)


def test_resolve_bytes():
    resolved = asm.resolve_instructions(parse(
        'start:',
        'not r1',
        '.strb -1',
        '.skip 2',
        'jmpa start',
    ))
    items = asm.validate_encodings(asm.resolve_labels(resolved, {}))
    binary = asm.resolve_bytes(items)
    assert binary == bytes.fromhex('57 01 ff 00 00 61 00 00 00 00')


def test_resolve_variables():
    items = parse(
        '.set SIZE, 0x10',
        'mov r0, SIZE',
        'ldr r1, [SIZE]',
    )
    variables = {}
    new_items = asm.resolve_variables(items, variables)
    assert len(new_items) == 2
    assert new_items[0].operands[1].value == 0x10
    assert new_items[0].operands[1].span == (9, 12)
    assert new_items[1].operands[1].inner.value == 0x10

    # the original items still refer to the variable by name
    assert isinstance(items[1].operands[1], asm.Identifier)
