# estimates by finite difference the second derivative of a cost function wrt a model's parameters, in a few directions
import os
import random
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch
import tyro
from torch.utils.tensorboard import SummaryWriter

from gradpca_utils.datasets import class_format, load_matrix
from gradpca_utils.directions import second_derivative_along_direction
from gradpca_utils.models import load_model, make_criterion
from gradpca_utils.pca import count_parameters, group_parameters, load_directions


@dataclass
class Args:
    n_inputs: int
    """number of inputs"""
    n_classes: int
    """number of targets"""
    data_filename: str
    """filename for the data (inputs followed by the class index on every row)"""
    directions_filename: str
    """the name of the file containing the unit-norm directions, one per line"""
    exp_name: str = os.path.basename(__file__)[: -len(".py")]
    """the name of this experiment"""
    seed: int = 1
    """seed of the experiment"""
    torch_deterministic: bool = True
    """if toggled, `torch.backends.cudnn.deterministic=False`"""
    cuda: bool = True
    """if toggled, cuda will be enabled by default"""

    # Model arguments
    model_filename: str = ""
    """the model state_dict filename (random initialization if empty)"""
    hidden_sizes: tuple[int, ...] = (32,)
    """hidden layer sizes of the MLP"""
    criterion_type: str = "class-nll"
    """the type of the criterion: 'class-nll' or 'mse'"""

    # Finite difference arguments
    n_directions: int = 7
    """number of directions to load from the file"""
    epsilon: float = 1e-6
    """stepsize for finite difference"""

    # Data arguments
    max_load: int = -1
    """max number of examples to load (-1 loads everything)"""
    header: bool = False
    """if toggled, the text data file starts with a `n_rows n_cols` line"""
    out_filename: str = "second_derivatives.txt"
    """name of the file to output to"""


if __name__ == "__main__":

    args = tyro.cli(Args)
    run_name = f"{Path(args.data_filename).stem}__{args.exp_name}__{args.seed}__{int(time.time())}"
    writer = SummaryWriter(f"runs/{run_name}")
    writer.add_text(
        "hyperparameters",
        "|param|value|\n|-|-|\n%s" % ("\n".join([f"|{key}|{value}|" for key, value in vars(args).items()])),
    )

    # TRY NOT TO MODIFY: seeding
    random.seed(args.seed)
    np.random.seed(args.seed)
    torch.manual_seed(args.seed)
    torch.backends.cudnn.deterministic = args.torch_deterministic

    device = torch.device("cuda" if torch.cuda.is_available() and args.cuda else "cpu")

    # data, in double precision for the finite differences
    matrix = load_matrix(args.data_filename, n_cols=args.n_inputs + 1, max_load=args.max_load, header=args.header)
    inputs, targets = class_format(matrix, args.n_inputs, args.n_classes)
    inputs, targets = inputs.double().to(device), targets.to(device)

    model = load_model(args.model_filename, args.n_inputs, list(args.hidden_sizes), args.n_classes, device).double()
    criterion = make_criterion(args.criterion_type, args.n_classes)
    params = [p for group in group_parameters(model).values() for p in group]
    n_params = count_parameters(params)
    print(f"{n_params} parameters.")

    directions = load_directions(args.directions_filename, args.n_directions, n_params).to(device)

    second_derivatives = []
    for i in range(args.n_directions):
        value = second_derivative_along_direction(
            model, criterion, params, directions[i], inputs, targets, epsilon=args.epsilon
        )
        second_derivatives.append(value)
        writer.add_scalar("second_derivative/value", value, i)
        print(value)

    np.savetxt(args.out_filename, np.array(second_derivatives), fmt="%.10g")
    writer.close()
