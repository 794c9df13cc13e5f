import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

import lilcc


def _wrap(value):
    return (value + 2 ** 63) % 2 ** 64 - 2 ** 63


def run_listing(lines):
    """Execute the instruction subset the code generator emits.

    Registers are 64-bit signed, `idiv` truncates toward zero and divides
    rdx:rax as set up by `cqo`. Returns rax at `ret`.
    """
    regs = {'rax': 0, 'rdi': 0, 'rcx': 0, 'rdx': 0}
    stack = []

    def value(operand):
        if operand in regs:
            return regs[operand]
        return int(operand)

    for line in lines:
        if not line.startswith('  '):
            continue  # directive or label
        op, _, rest = line.strip().partition(' ')
        args = [a.strip() for a in rest.split(',')] if rest else []

        if op == 'mov':
            regs[args[0]] = _wrap(value(args[1]))
        elif op == 'push':
            stack.append(regs[args[0]])
        elif op == 'pop':
            regs[args[0]] = stack.pop()
        elif op == 'add':
            regs[args[0]] = _wrap(regs[args[0]] + value(args[1]))
        elif op == 'sub':
            regs[args[0]] = _wrap(regs[args[0]] - value(args[1]))
        elif op == 'imul':
            regs[args[0]] = _wrap(regs[args[0]] * value(args[1]))
        elif op == 'cqo':
            regs['rdx'] = -1 if regs['rax'] < 0 else 0
        elif op == 'idiv':
            divisor = regs[args[0]]
            if divisor == 0:
                raise ZeroDivisionError('idiv by zero')
            if regs['rax'] == -2 ** 63 and divisor == -1:
                raise ArithmeticError('idiv overflow')
            dividend = regs['rax']
            quotient = abs(dividend) // abs(divisor)
            if (dividend < 0) != (divisor < 0):
                quotient = -quotient
            regs['rdx'] = dividend - quotient * divisor
            regs['rax'] = _wrap(quotient)
        elif op == 'ret':
            assert not stack, 'unbalanced push/pop'
            return regs['rax']
        else:
            raise AssertionError(f'unexpected instruction {line!r}')

    raise AssertionError('listing has no ret')


@pytest.fixture
def run():
    def _run(text):
        return run_listing(lilcc.compile_expr(text).splitlines())
    return _run


@pytest.fixture
def parse():
    def _parse(text):
        return lilcc.Parser(lilcc.Lexer(text).tokenize()).parse()
    return _parse
