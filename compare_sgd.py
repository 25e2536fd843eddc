"""
python compare_sgd.py
"""

import torch
import torch.nn as nn
import torch.nn.functional as F

from onesided_kron import OneSidedKron

torch.set_float32_matmul_precision('high')


class MLP(nn.Module):
    def __init__(self):
        super().__init__()
        self.fc1 = nn.Linear(32, 128, bias=False)
        self.fc2 = nn.Linear(128, 64, bias=False)
        self.fc3 = nn.Linear(64, 1, bias=False)

    def forward(self, x):
        x = F.relu(self.fc1(x))
        x = F.relu(self.fc2(x))
        return self.fc3(x)


def make_dataset(device, n=4096, seed=0):
    gen = torch.Generator().manual_seed(seed)
    x = torch.randn(n, 32, generator=gen)
    w = torch.randn(32, 1, generator=gen)
    # input scales spread over two decades
    x = x * torch.logspace(0, -2, 32)
    y = torch.sin(x @ w) + 0.01 * torch.randn(n, 1, generator=gen)
    return x.to(device), y.to(device)


def train(model, optimizer, x, y, steps=1000, batch_size=64, name=""):
    model.train()
    for step in range(steps):
        idx = torch.randint(0, x.size(0), (batch_size,), device=x.device)
        optimizer.zero_grad()
        loss = F.mse_loss(model(x[idx]), y[idx])
        loss.backward()
        optimizer.step()

        if step % 100 == 0:
            print(f"{name} step {step}\tLoss: {loss.item():.6f}")

    with torch.no_grad():
        return F.mse_loss(model(x), y).item()


def main():
    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    print(f"Using device: {device}")
    torch.manual_seed(0)

    x, y = make_dataset(device)

    model_kron = MLP().to(device)
    model_sgd = MLP().to(device)
    model_sgd.load_state_dict(model_kron.state_dict())

    optimizer_kron = OneSidedKron(
        model_kron.named_parameters(),
        lr=0.001,
        weight_decay=1e-6,
        generator=torch.Generator(device=device).manual_seed(0),
    )
    optimizer_sgd = torch.optim.SGD(model_sgd.parameters(), lr=0.01, momentum=0.9)

    print("\nTraining with OneSidedKron optimizer:")
    kron_loss = train(model_kron, optimizer_kron, x, y, name="OneSidedKron")

    print("\nTraining with SGD optimizer:")
    sgd_loss = train(model_sgd, optimizer_sgd, x, y, name="SGD")

    print(f"\nFinal loss: OneSidedKron {kron_loss:.6f}, SGD {sgd_loss:.6f}")


if __name__ == "__main__":
    main()
