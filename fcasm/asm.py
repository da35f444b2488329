import argparse
from collections import namedtuple
import copy
from ctypes import c_uint8, c_uint32
import logging
import os
import re
import struct
import sys

# Python Cookbook: Section 13.12
log = logging.getLogger(__name__)
log.addHandler(logging.NullHandler())


REGISTERS = {
    'r0': 0x00,
    'r1': 0x01,
    'r2': 0x02,
    'r3': 0x03,
    'r4': 0x04,
    'r5': 0x05,
    'r6': 0x06,
    'r7': 0x07,
    'sp': 0x08,
}

DIRECTIVE_MARKER = '.'
COMMENT_MARKER = ';'

# operand descriptors (encoding shapes an operand can satisfy)
REGISTER = 'reg'
LABEL = 'label'
IMM5 = 'imm5'
IMM8 = 'imm8'
IMM32 = 'imm32'
MEMORY_IMM32 = '[imm32]'
MEMORY_REG = '[reg]'
MEMORY_REG_OFFSET8 = '[reg+imm8]'
MEMORY_REG_OFFSET32 = '[reg+imm32]'
MEMORY_REG_REG = '[reg+reg]'
STRING = 'string'

DESCRIPTORS = {
    REGISTER,
    LABEL,
    IMM5,
    IMM8,
    IMM32,
    MEMORY_IMM32,
    MEMORY_REG,
    MEMORY_REG_OFFSET8,
    MEMORY_REG_OFFSET32,
    MEMORY_REG_REG,
    STRING,
}


# low-level funcs just return value errors
# high-level funcs watch for ValueErrors attach Line info
class AssemblerError(Exception):

    def __init__(self, message, line, span=None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.span = span

    def pointer(self):
        if self.span is None:
            return ''
        start, end = self.span
        contents = self.line.contents
        indent = len(contents) - len(contents.lstrip())
        padding = max(0, 2 + start - 1 - indent)
        return ' ' * padding + '^' * (end - start + 1) + '\n'

    def __str__(self):
        return '{}\n{}AssemblerError: {}'.format(self.line, self.pointer(), self.message)


def log_conversion(pass_name, item_a, item_b):
    s = '{}: file {}, line {}: "{}" -> "{}"'
    s = s.format(pass_name, os.path.basename(item_a.line.file), item_a.line.number, item_a, item_b)
    log.info(s)


def log_variable(pass_name, item, name, value):
    s = '{}: file {}, line {}: "{}" -> "{} = {}"'
    s = s.format(pass_name, os.path.basename(item.line.file), item.line.number, item, name, value)
    log.info(s)


def lookup_register(reg):
    try:
        return REGISTERS[reg.lower()]
    except KeyError:
        raise ValueError('unrecognized register: {}'.format(reg))


def is_directive(mnemonic):
    return mnemonic.startswith(DIRECTIVE_MARKER)


def pack_byte(value):
    return struct.pack('<B', c_uint8(value).value)


def pack_dword(value):
    return struct.pack('<I', c_uint32(value).value)


class Line:

    def __init__(self, file, number, contents):
        self.file = file
        self.number = number
        self.contents = contents

    def __len__(self):
        return len(self.contents)

    def __repr__(self):
        s = '{}({!r}, {!r}, {!r})'
        s = s.format(type(self).__name__, self.file, self.number, self.contents)
        return s

    def __str__(self):
        s = 'File "{}", line {}\n  {}'
        s = s.format(self.file, self.number, self.contents.lstrip())
        return s


# columns are 1-based and inclusive on both ends
Token = namedtuple('Token', 'kind value start end')


class LineTokens:

    def __init__(self, line, tokens):
        self.line = line
        self.tokens = tokens

    def __len__(self):
        return len(self.tokens)

    def __repr__(self):
        s = '{}({!r}, {!r})'
        s = s.format(type(self).__name__, self.line, self.tokens)
        return s

    def __str__(self):
        return str([token.value for token in self.tokens])


# base class for instruction operands, span is (start, end) columns
class Operand:

    def __init__(self, span=None):
        self.span = span


class Register(Operand):

    def __init__(self, name, span=None):
        super().__init__(span)
        self.name = name

    def __repr__(self):
        s = '{}({!r})'
        s = s.format(type(self).__name__, self.name)
        return s

    def __str__(self):
        return self.name


class Identifier(Operand):

    def __init__(self, name, span=None):
        super().__init__(span)
        self.name = name

    def __repr__(self):
        s = '{}({!r})'
        s = s.format(type(self).__name__, self.name)
        return s

    def __str__(self):
        return self.name


class Number(Operand):

    def __init__(self, value, span=None):
        super().__init__(span)
        self.value = value

    def __repr__(self):
        s = '{}({!r})'
        s = s.format(type(self).__name__, self.value)
        return s

    def __str__(self):
        return str(self.value)


class String(Operand):

    def __init__(self, value, span=None):
        super().__init__(span)
        self.value = value

    def __repr__(self):
        s = '{}({!r})'
        s = s.format(type(self).__name__, self.value)
        return s

    def __str__(self):
        return '"{}"'.format(self.value.encode('unicode_escape').decode('ascii'))


class MemoryNoMath(Operand):

    def __init__(self, inner, span=None):
        super().__init__(span)
        self.inner = inner

    def __repr__(self):
        s = '{}({!r})'
        s = s.format(type(self).__name__, self.inner)
        return s

    def __str__(self):
        return '[{}]'.format(self.inner)


class MemoryWithMath(Operand):

    def __init__(self, lhs, rhs, op, span=None):
        super().__init__(span)
        self.lhs = lhs
        self.rhs = rhs
        self.op = op

    def __repr__(self):
        s = '{}(lhs={!r}, rhs={!r}, op={!r})'
        s = s.format(type(self).__name__, self.lhs, self.rhs, self.op)
        return s

    def __str__(self):
        return '[{} {} {}]'.format(self.lhs, self.op, self.rhs)


class Instruction:

    def __init__(self, line, label, mnemonic, operands, span):
        self.line = line
        self.label = label
        self.mnemonic = mnemonic
        self.operands = operands
        self.span = span

    def __repr__(self):
        s = '{}(label={!r}, mnemonic={!r}, operands={!r})'
        s = s.format(type(self).__name__, self.label, self.mnemonic, self.operands)
        return s

    def __str__(self):
        parts = []
        if self.label is not None:
            parts.append('{}:'.format(self.label))
        if self.mnemonic is not None:
            parts.append(self.mnemonic)
        s = ' '.join(parts)
        if len(self.operands) > 0:
            s += ' ' + ', '.join(str(operand) for operand in self.operands)
        return s


def replace_operands(item, operands):
    d = copy.copy(vars(item))
    d['operands'] = operands
    return item.__class__(**d)


Encoding = namedtuple('Encoding', 'opcode operands size')
Directive = namedtuple('Directive', 'name operands')


# variants are tried in order, the first one that fits wins
# sizes lay out addresses; register-pair forms emit one byte more than listed
OPCODES = {
    'mov': [
        Encoding(0x20, (REGISTER, REGISTER), 2),
        Encoding(0x21, (REGISTER, IMM32), 6),
    ],
    'str': [
        Encoding(0x23, (MEMORY_IMM32, REGISTER), 6),
        Encoding(0x22, (MEMORY_REG, REGISTER), 2),
        Encoding(0x24, (MEMORY_REG_OFFSET8, REGISTER), 3),
        Encoding(0x25, (MEMORY_REG_OFFSET32, REGISTER), 6),
        Encoding(0x26, (MEMORY_REG_REG, REGISTER), 3),
    ],
    'ldr': [
        Encoding(0x27, (REGISTER, MEMORY_IMM32), 6),
        Encoding(0x28, (REGISTER, MEMORY_REG), 2),
        Encoding(0x29, (REGISTER, MEMORY_REG_OFFSET8), 3),
        Encoding(0x2a, (REGISTER, MEMORY_REG_OFFSET32), 6),
        Encoding(0x2b, (REGISTER, MEMORY_REG_REG), 3),
    ],

    'add': [
        Encoding(0x42, (REGISTER, REGISTER), 2),
        Encoding(0x41, (REGISTER, IMM32), 6),
    ],
    'sub': [
        Encoding(0x44, (REGISTER, REGISTER), 2),
        Encoding(0x43, (REGISTER, IMM32), 6),
    ],
    'not': [
        Encoding(0x57, (REGISTER,), 2),
    ],
    'and': [
        Encoding(0x4c, (REGISTER, REGISTER), 2),
        Encoding(0x4b, (REGISTER, IMM32), 6),
    ],
    'shr': [
        Encoding(0x54, (REGISTER, REGISTER), 2),
        Encoding(0x53, (REGISTER, IMM5), 3),
    ],
    'cmp': [
        Encoding(0x5a, (REGISTER, REGISTER), 2),
    ],
    'tst': [
        Encoding(0x5c, (REGISTER, REGISTER), 2),
        Encoding(0x55, (REGISTER, IMM32), 6),
    ],

    'jmpr': [
        Encoding(0x60, (IMM8,), 2),
    ],
    'jmpa': [
        Encoding(0x61, (IMM32,), 5),
        Encoding(0x62, (REGISTER,), 2),
    ],
    'jeqr': [
        Encoding(0x64, (IMM8,), 2),
    ],
    'jner': [
        Encoding(0x68, (IMM8,), 2),
    ],
    'call': [
        Encoding(0x7d, (IMM32,), 5),
        Encoding(0x7e, (REGISTER,), 2),
    ],
    'ret': [
        Encoding(0x7f, (), 1),
    ],

    'halt': [
        Encoding(0xa1, (), 1),
    ],
    'iret': [
        Encoding(0xa3, (), 1),
    ],
}

DIRECTIVES = {
    '.origin': Directive('.origin', (IMM32,)),
    '.skip': Directive('.skip', (IMM32,)),
    '.strd': Directive('.strd', (IMM32,)),
    '.strb': Directive('.strb', (IMM8,)),
    '.strs': Directive('.strs', (STRING,)),
}

# consumed by resolve_variables, never reaches the directive table
SET_DIRECTIVE = '.set'


class ResolvedInstruction:

    def __init__(self, address, instr, encoding, size):
        self.address = address
        self.instr = instr
        self.encoding = encoding
        self.size = size

    @property
    def line(self):
        return self.instr.line

    def __repr__(self):
        s = '{}(address={!r}, instr={!r}, encoding={!r}, size={!r})'
        s = s.format(type(self).__name__, self.address, self.instr, self.encoding, self.size)
        return s

    def __str__(self):
        s = '0x{:08x}: {}'
        s = s.format(self.address, self.instr)
        return s


def describe_number(value):
    """
    Determine which immediate widths a number fits into.

    Non-negative numbers are checked against the unsigned range of each
    width and negative numbers against the signed one. Anything fitting a
    narrower width also fits the wider ones.

    :param value: Integer to classify
    :returns: Set of immediate descriptors
    """

    if value >= 0:
        ranges = [
            (IMM5, 0, 31),
            (IMM8, 0, 0xff),
            (IMM32, 0, 0xffffffff),
        ]
    else:
        ranges = [
            (IMM5, -16, 15),
            (IMM8, -0x80, 0x7f),
            (IMM32, -0x80000000, 0x7fffffff),
        ]

    descriptors = {name for name, low, high in ranges if low <= value <= high}
    if len(descriptors) == 0:
        raise ValueError('number is out of imm32 range: {}'.format(value))

    return descriptors


def describe_operand(operand):
    if isinstance(operand, Register):
        return {REGISTER}
    elif isinstance(operand, Identifier):
        return {LABEL}
    elif isinstance(operand, String):
        return {STRING}
    elif isinstance(operand, Number):
        return describe_number(operand.value)
    elif isinstance(operand, MemoryNoMath):
        if isinstance(operand.inner, Register):
            return {MEMORY_REG}
        # a dereferenced label is an absolute address too
        if isinstance(operand.inner, (Number, Identifier)):
            return {MEMORY_IMM32}
    elif isinstance(operand, MemoryWithMath):
        if isinstance(operand.rhs, Register):
            return {MEMORY_REG_REG}
        if isinstance(operand.rhs, Number):
            offset = describe_number(operand.rhs.value)
            descriptors = set()
            if IMM8 in offset:
                descriptors.add(MEMORY_REG_OFFSET8)
            if IMM32 in offset:
                descriptors.add(MEMORY_REG_OFFSET32)
            return descriptors

    raise TypeError('unexpected operand shape: {!r}'.format(operand))


def describe_operands(item):
    described = []
    for operand in item.operands:
        try:
            described.append(describe_operand(operand))
        except ValueError as e:
            raise AssemblerError(str(e), item.line, operand.span)
    return described


def operands_match(required, described):
    if len(required) != len(described):
        return False

    for want, have in zip(required, described):
        # labels have no value yet, their width gets checked after resolution
        if have == {LABEL}:
            if want not in (IMM8, IMM32):
                return False
        elif want not in have:
            return False

    return True


def select_encoding(encodings, described):
    candidates = [e for e in encodings if operands_match(e.operands, described)]
    if len(candidates) == 0:
        return None

    # commit to the widest form until the label values are known
    if any(have == {LABEL} for have in described):
        return max(candidates, key=lambda e: e.size)

    return candidates[0]


def directive_size(item, address):
    name = item.mnemonic
    operand = item.operands[0]

    if name in ('.origin', '.skip') and not isinstance(operand, Number):
        s = '{} requires a number, not a label'
        s = s.format(name)
        raise AssemblerError(s, item.line, operand.span)

    if name == '.origin':
        if operand.value < address:
            s = 'address must be greater than or equal to {}'
            s = s.format(address)
            raise AssemblerError(s, item.line, operand.span)
        return operand.value - address
    elif name == '.skip':
        if operand.value < 0:
            raise AssemblerError('skip count must not be negative', item.line, operand.span)
        return operand.value
    elif name == '.strd':
        return 4
    elif name == '.strb':
        return 1
    elif name == '.strs':
        return len(operand.value.encode('utf-8'))

    raise ValueError('no size rule for directive: {}'.format(name))


def directive_bytes(item):
    name = item.encoding.name

    if name in ('.origin', '.skip'):
        return b'\x00' * item.size

    operand = item.instr.operands[0]
    if name == '.strd':
        return pack_dword(operand.value)
    elif name == '.strb':
        return pack_byte(operand.value)
    elif name == '.strs':
        return operand.value.encode('utf-8')

    raise ValueError('no byte rule for directive: {}'.format(name))


def encode_operand(descriptor, operand):
    if descriptor == REGISTER:
        return pack_byte(lookup_register(operand.name))
    elif descriptor in (IMM5, IMM8):
        return pack_byte(operand.value)
    elif descriptor == IMM32:
        return pack_dword(operand.value)
    elif descriptor == MEMORY_REG:
        return pack_byte(lookup_register(operand.inner.name))
    elif descriptor == MEMORY_REG_OFFSET8:
        base = lookup_register(operand.lhs.name)
        offset = operand.rhs.value
        if operand.op == '-':
            offset = -offset
        return pack_byte(base) + pack_byte(offset)
    elif descriptor == MEMORY_REG_REG:
        # the parser only builds register offsets with '+'
        assert operand.op == '+'
        base = lookup_register(operand.lhs.name)
        offset = lookup_register(operand.rhs.name)
        return pack_byte(base) + pack_byte(offset)
    elif descriptor in (MEMORY_IMM32, MEMORY_REG_OFFSET32):
        raise ValueError('{} operands cannot be encoded yet: {}'.format(descriptor, operand))

    raise TypeError('descriptor has no operand encoding: {}'.format(descriptor))


def instruction_bytes(item):
    code = bytearray(pack_byte(item.encoding.opcode))
    for descriptor, operand in zip(item.encoding.operands, item.instr.operands):
        try:
            code.extend(encode_operand(descriptor, operand))
        except ValueError as e:
            raise AssemblerError(str(e), item.line, operand.span)
    return bytes(code)


def read_lines(path_or_source):
    if os.path.exists(path_or_source):
        log.info('reading file: {}'.format(os.path.abspath(path_or_source)))
        path = path_or_source
        with open(path) as f:
            source = f.read()
    else:
        path = '<string>'
        source = path_or_source

    lines = []
    for i, raw_line in enumerate(source.splitlines(), start=1):
        contents = raw_line.strip()

        # skip empty lines and whole-line comments
        if len(contents) == 0 or contents.startswith(COMMENT_MARKER):
            continue

        lines.append(Line(path, i, raw_line))

    return lines


RE_REGISTER = re.compile(r'r[0-9]+|sp', flags=re.IGNORECASE)

PUNCTUATION = {
    ':': 'colon',
    ',': 'comma',
    '[': 'lbracket',
    ']': 'rbracket',
    '+': 'op',
    '-': 'op',
}

ESCAPES = {
    'n': '\n',
    't': '\t',
    'r': '\r',
    '0': '\0',
}


def is_word_char(c):
    return c.isalnum() or c in '_.'


def lex_string(line, index):
    contents = line.contents
    start = index + 1
    chars = []

    i = index + 1
    while i < len(contents):
        c = contents[i]
        if c == '"':
            return Token('string', ''.join(chars), start, i + 1), i + 1
        if c == '\\':
            if i + 1 >= len(contents):
                break
            escaped = contents[i + 1]
            chars.append(ESCAPES.get(escaped, escaped))
            i += 2
            continue
        chars.append(c)
        i += 1

    raise AssemblerError('incomplete string literal', line, (start, len(contents)))


def lex_number(line, index):
    contents = line.contents
    end = index + 1
    while end < len(contents) and contents[end].isalnum():
        end += 1

    text = contents[index:end]
    span = (index + 1, end)
    if text[:2].lower() == '0x':
        kind, digits, base = 'hexadecimal', text[2:], 16
    else:
        kind, digits, base = 'decimal', text, 10

    try:
        value = int(digits, base=base)
    except ValueError:
        raise AssemblerError('invalid {} number'.format(kind), line, span)

    return Token('number', value, span[0], span[1]), end


def lex_tokens(line):
    # simplify lexing a single string
    if type(line) == str:
        line = Line('<string>', 1, line)

    contents = line.contents
    tokens = []

    i = 0
    while i < len(contents):
        c = contents[i]
        column = i + 1

        if c in ' \t':
            i += 1
        elif c == COMMENT_MARKER:
            break
        elif c in PUNCTUATION:
            tokens.append(Token(PUNCTUATION[c], c, column, column))
            i += 1
        elif c.isalpha() or c in '_.':
            end = i + 1
            while end < len(contents) and is_word_char(contents[end]):
                end += 1
            word = contents[i:end]
            kind = 'register' if RE_REGISTER.fullmatch(word) else 'identifier'
            tokens.append(Token(kind, word, column, end))
            i = end
        elif c.isdigit():
            token, i = lex_number(line, i)
            tokens.append(token)
        elif c == '"':
            token, i = lex_string(line, i)
            tokens.append(token)
        else:
            raise AssemblerError('unexpected character: {}'.format(c), line, (column, column))

    return LineTokens(line, tokens)


# token kind patterns accepted inside brackets
MEMORY_NO_MATH_KINDS = [
    ('lbracket', 'number', 'rbracket'),
    ('lbracket', 'identifier', 'rbracket'),
    ('lbracket', 'register', 'rbracket'),
]

MEMORY_WITH_MATH_KINDS = [
    ('lbracket', 'register', 'op', 'number', 'rbracket'),
    ('lbracket', 'register', 'op', 'register', 'rbracket'),
]


def parse_operand(tokens, line):
    span = (tokens[0].start, tokens[-1].end)
    kinds = tuple(token.kind for token in tokens)

    if kinds == ('register',):
        return Register(tokens[0].value, span)
    elif kinds == ('identifier',):
        return Identifier(tokens[0].value, span)
    elif kinds == ('string',):
        return String(tokens[0].value, span)
    elif kinds == ('number',):
        return Number(tokens[0].value, span)
    # signed numbers
    elif kinds == ('op', 'number'):
        sign, number = tokens
        value = -number.value if sign.value == '-' else number.value
        return Number(value, span)
    elif kinds in MEMORY_NO_MATH_KINDS:
        inner = parse_operand(tokens[1:2], line)
        return MemoryNoMath(inner, span)
    elif kinds in MEMORY_WITH_MATH_KINDS:
        _, base, op, offset, _ = tokens
        if offset.kind == 'register' and op.value != '+':
            raise AssemblerError('register offsets can only be added', line, (op.start, op.end))
        lhs = parse_operand([base], line)
        rhs = parse_operand([offset], line)
        return MemoryWithMath(lhs, rhs, op.value, span)
    else:
        raise AssemblerError('bad operand tokens', line, span)


def split_operands(tokens, line):
    groups = []
    group = []
    for token in tokens:
        if token.kind != 'comma':
            group.append(token)
            continue
        if len(group) == 0:
            raise AssemblerError('unexpected comma', line, (token.start, token.end))
        groups.append(group)
        group = []

    if len(group) > 0:
        groups.append(group)
    elif len(tokens) > 0:
        last = tokens[-1]
        raise AssemblerError('unexpected comma', line, (last.start, last.end))

    return groups


def parse_instruction(line_tokens):
    line = line_tokens.line
    tokens = line_tokens.tokens

    # labels
    label = None
    rest = tokens
    if len(tokens) >= 2 and tokens[0].kind == 'identifier' and tokens[1].kind == 'colon':
        label = tokens[0].value
        rest = tokens[2:]

    # mnemonic and operands
    mnemonic = None
    operands = []
    if len(rest) > 0:
        head, *rest = rest
        if head.kind != 'identifier':
            raise AssemblerError('invalid instruction mnemonic', line, (head.start, head.end))
        mnemonic = head.value.lower()
        operands = [parse_operand(group, line) for group in split_operands(rest, line)]

    span = (tokens[0].start, tokens[-1].end)
    return Instruction(line, label, mnemonic, operands, span)


def parse_variable(item, variables, labels):
    if len(item.operands) != 2:
        s = 'invalid number of operands, expected 2, got {}'
        s = s.format(len(item.operands))
        raise AssemblerError(s, item.line, item.span)

    name, value = item.operands
    if not isinstance(name, Identifier):
        s = 'expected a variable name, got {}'
        s = s.format(name)
        raise AssemblerError(s, item.line, name.span)

    if isinstance(value, Number):
        return name.name, value
    elif isinstance(value, Identifier):
        if value.name in labels:
            return name.name, value
        if value.name in variables:
            return name.name, variables[value.name]
        s = "unknown identifier '{}'"
        s = s.format(value.name)
        raise AssemblerError(s, item.line, value.span)
    else:
        s = 'invalid operand type for variable value: {}'
        s = s.format(value)
        raise AssemblerError(s, item.line, value.span)


def expand_variable(operand, variables):
    if isinstance(operand, MemoryNoMath):
        inner = expand_variable(operand.inner, variables)
        return MemoryNoMath(inner, operand.span)
    if not isinstance(operand, Identifier) or operand.name not in variables:
        return operand

    # keep the span of the use site for diagnostics
    value = copy.copy(variables[operand.name])
    value.span = operand.span
    return value


def resolve_variables(items, variables):
    labels = {item.label for item in items if item.label is not None}

    defined = []
    for item in items:
        if item.mnemonic != SET_DIRECTIVE:
            defined.append(item)
            continue

        name, value = parse_variable(item, variables, labels)
        if name in variables:
            raise AssemblerError('variable with this name already exists', item.line, item.span)
        variables[name] = value

        log_variable('resolve_variables', item, name, value)

        # a label on a .set line still marks this position
        if item.label is not None:
            defined.append(Instruction(item.line, item.label, None, [], item.span))

    new_items = []
    for item in defined:
        operands = [expand_variable(operand, variables) for operand in item.operands]
        new_item = replace_operands(item, operands)
        new_items.append(new_item)

        if str(new_item) != str(item):
            log_conversion('resolve_variables', item, new_item)

    return new_items


def resolve_instruction(item, address):
    # bare labels take up no space
    if item.mnemonic is None:
        return ResolvedInstruction(address, item, None, 0)

    if is_directive(item.mnemonic):
        if item.mnemonic not in DIRECTIVES:
            s = "unrecognized directive '{}'"
            s = s.format(item.mnemonic)
            raise AssemblerError(s, item.line, item.span)

        directive = DIRECTIVES[item.mnemonic]
        described = describe_operands(item)
        if not operands_match(directive.operands, described):
            s = "bad operands for directive '{}'"
            s = s.format(item.mnemonic)
            raise AssemblerError(s, item.line, item.span)

        size = directive_size(item, address)
        return ResolvedInstruction(address, item, directive, size)

    if item.mnemonic not in OPCODES:
        s = "unrecognized instruction mnemonic '{}'"
        s = s.format(item.mnemonic)
        raise AssemblerError(s, item.line, item.span)

    described = describe_operands(item)
    encoding = select_encoding(OPCODES[item.mnemonic], described)
    if encoding is None:
        raise AssemblerError('unrecognized instruction, check the operands', item.line, item.span)

    return ResolvedInstruction(address, item, encoding, encoding.size)


def resolve_instructions(items):
    address = 0
    new_items = []
    for item in items:
        new_item = resolve_instruction(item, address)
        address = new_item.address + new_item.size
        new_items.append(new_item)

        s = 'resolve_instructions: file {}, line {}: "{}" -> 0x{:08x} ({} bytes)'
        s = s.format(os.path.basename(item.line.file), item.line.number, item, new_item.address, new_item.size)
        log.info(s)

    return new_items


def resolve_label(operand, labels, line):
    if isinstance(operand, MemoryNoMath):
        inner = resolve_label(operand.inner, labels, line)
        return MemoryNoMath(inner, operand.span)
    if not isinstance(operand, Identifier):
        return operand

    if operand.name not in labels:
        s = "unresolved label '{}'"
        s = s.format(operand.name)
        raise AssemblerError(s, line, operand.span)

    return Number(labels[operand.name], operand.span)


def resolve_labels(items, labels):
    # first pass collects addresses, second rewrites references
    defined = set()
    for item in items:
        name = item.instr.label
        if name is None:
            continue
        if name in defined:
            s = "duplicate label '{}'"
            s = s.format(name)
            raise AssemblerError(s, item.line, item.instr.span)
        defined.add(name)
        labels[name] = item.address

    new_items = []
    for item in items:
        operands = [resolve_label(operand, labels, item.line) for operand in item.instr.operands]
        instr = replace_operands(item.instr, operands)
        new_item = ResolvedInstruction(item.address, instr, item.encoding, item.size)
        new_items.append(new_item)

        if str(instr) != str(item.instr):
            log_conversion('resolve_labels', item.instr, instr)

    return new_items


def validate_encodings(items):
    for item in items:
        if item.encoding is None:
            continue

        # labels were matched before their values were known
        for want, operand in zip(item.encoding.operands, item.instr.operands):
            try:
                have = describe_operand(operand)
            except ValueError as e:
                raise AssemblerError(str(e), item.line, operand.span)
            if want not in have:
                s = 'value {} does not fit in {}'
                s = s.format(operand, want)
                raise AssemblerError(s, item.line, operand.span)

    return items


def resolve_bytes(items):
    output = bytearray()
    for item in items:
        if item.encoding is None:
            continue

        if isinstance(item.encoding, Directive):
            data = directive_bytes(item)
            # directive sizes were already used to lay out the program
            assert len(data) == item.size
        else:
            data = instruction_bytes(item)

        output.extend(data)

        s = 'resolve_bytes: file {}, line {}: "{}" -> "{}"'
        s = s.format(os.path.basename(item.line.file), item.line.number, item.instr, data.hex())
        log.info(s)

    return bytes(output)


# Passes:
#   - Read -> Lex -> Parse source
#   - Resolve variables  (collect .set values and substitute them)
#   - Resolve instructions  (pick an encoding, assign address and size)
#   - Resolve labels  (replace label references with addresses)
#   - Validate encodings  (check resolved labels still fit their slots)
#   - Resolve bytes  (emit opcodes, operands and directive payloads)
def assemble(path_or_source, *, variables=None, labels=None):
    """
    Assemble an FCVM assembly program into a raw binary.

    :param path_or_source: Path to an assembly file or raw assembly source
    :param variables: Optional dict that receives the .set variables
    :param labels: Optional dict that receives (or supplies) label addresses
    :returns: Assembled binary as bytes
    """

    # keep variables and labels in separate namespaces
    variables = variables if variables is not None else {}
    labels = labels if labels is not None else {}

    # read, lex, and parse the source
    lines = read_lines(path_or_source)
    tokens = [lex_tokens(l) for l in lines]
    tokens = [t for t in tokens if len(t) > 0]
    items = [parse_instruction(t) for t in tokens]
    for item in items:
        log.info('parsed file {}, line {}: "{}"'.format(os.path.basename(item.line.file), item.line.number, item))

    # run items through each pass
    items = resolve_variables(items, variables)
    items = resolve_instructions(items)
    items = resolve_labels(items, labels)
    items = validate_encodings(items)
    program = resolve_bytes(items)

    return program


def cli_main():
    # any cleaner way to handle this w/ argparse positional args?
    if len(sys.argv) >= 2 and sys.argv[1] == '--version':
        from fcasm import __version__
        version = 'fcasm {}'.format(__version__)
        raise SystemExit(version)

    parser = argparse.ArgumentParser(
        description='Assemble FCVM source code',
        prog='fcasm',
    )
    parser.add_argument('input_asm', type=str, help='input source file')
    parser.add_argument('-o', '--output', type=str, default='prog.bin', help='output binary file (default "prog.bin")')
    parser.add_argument('-v', '--verbose', action='store_true', help='verbose assembler output')
    parser.add_argument('--version', action='store_true', help='print assembler version and exit')
    args = parser.parse_args()

    if args.version:
        from fcasm import __version__
        version = 'fcasm {}'.format(__version__)
        raise SystemExit(version)

    log_fmt = '%(message)s'
    if args.verbose:
        logging.basicConfig(format=log_fmt, level=logging.INFO, stream=sys.stdout)

    if not os.path.exists(args.input_asm):
        raise SystemExit('missing input file: {}'.format(args.input_asm))

    if os.path.abspath(args.input_asm) == os.path.abspath(args.output):
        raise SystemExit('input and output files must differ: {}'.format(args.output))

    variables = {}
    labels = {}
    try:
        binary = assemble(args.input_asm, variables=variables, labels=labels)
    except AssemblerError as e:
        raise SystemExit(e)

    if args.verbose:
        for k, v in variables.items():
            log.info('variable: {:<25} = {}'.format(k, v))
        for k, v in labels.items():
            log.info('label: {:<25} = 0x{:08x} ({})'.format(k, v, v))

    with open(args.output, 'wb') as out_bin:
        out_bin.write(binary)


if __name__ == '__main__':
    cli_main()
